import numpy as np
import pytest
import importlib

from convlab.options import Algo

@pytest.fixture
def rng():
    return np.random.default_rng(0)

def _has_cupy():
    return importlib.util.find_spec("cupy") is not None

@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    if request.param == "cuda" and not _has_cupy():
        pytest.skip("cupy not installed")
    return request.param

@pytest.fixture(params=[Algo.CPU_BASE, Algo.CPU_SIMD, Algo.CUDA_BASE], ids=lambda a: a.value)
def algo(request):
    if request.param is Algo.CUDA_BASE and not _has_cupy():
        pytest.skip("cupy not installed")
    return request.param
