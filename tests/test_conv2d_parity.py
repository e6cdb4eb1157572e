import numpy as np
import pytest

from convlab.backends import (
    ScalarBackend,
    SimdBackend,
    conv2d_backward_kernel,
    conv2d_forward_kernel,
)
from convlab.options import Algo
from tests.utils import (
    assert_close,
    make_layer,
    run_backward,
    run_forward,
    torch_reference,
)

GEOMETRIES = [
    # B, IC, H, W, K, OC
    (2, 2, 7, 9, 3, 3),
    (1, 1, 5, 5, 1, 2),
    (3, 3, 6, 4, 2, 2),
    (2, 1, 8, 12, 5, 4),
]


def _layer_arrays(layer):
    return layer.w.to_numpy(), layer.b.to_numpy()


@pytest.mark.parametrize("B,IC,H,W,K,OC", GEOMETRIES)
def test_conv2d_forward_backward_matches_torch(rng, algo, B, IC, H, W, K, OC):
    layer = make_layer(algo, IC, H, W, K, OC, rng)
    x_np = rng.normal(size=(B, IC, H, W)).astype(np.float32)
    gy_np = rng.normal(size=(B, OC, H - K + 1, W - K + 1)).astype(np.float32)

    w_np, b_np = _layer_arrays(layer)
    y_ref, gx_ref, gw_ref, gb_ref = torch_reference(x_np, w_np, b_np, gy_np)

    _, y = run_forward(layer, x_np)
    gx, gw, gb = run_backward(layer, gy_np)

    assert y.shape == (B, OC, H - K + 1, W - K + 1)
    assert gx.shape == x_np.shape
    assert_close(y, y_ref, atol=1e-5, rtol=1e-5)
    assert_close(gx, gx_ref, atol=1e-5, rtol=1e-4)
    assert_close(gw, gw_ref, atol=1e-4, rtol=1e-4)
    assert_close(gb, gb_ref, atol=1e-4, rtol=1e-4)


def test_conv2d_unit_kernel_hand_example(algo):
    layer = make_layer(algo, 1, 2, 2, 1, 1, np.random.default_rng(0), max_batch=1)
    layer.load_state_dict({"w": np.full((1, 1, 1, 1), 2.0), "b": np.array([1.0])})

    _, y = run_forward(layer, np.array([[[[1.0, 2.0], [3.0, 4.0]]]]))
    assert np.array_equal(y, np.array([[[[3.0, 5.0], [7.0, 9.0]]]], dtype=np.float32))

    gx, gw, gb = run_backward(layer, np.ones((1, 1, 2, 2)))
    assert np.array_equal(gx, np.full((1, 1, 2, 2), 2.0, dtype=np.float32))
    assert np.array_equal(gw, np.array([[[[10.0]]]], dtype=np.float32))
    assert np.array_equal(gb, np.array([4.0], dtype=np.float32))


def test_conv2d_full_kernel_gives_single_pixel(rng, algo):
    layer = make_layer(algo, 2, 3, 3, 3, 2, rng)
    x_np = rng.normal(size=(2, 2, 3, 3)).astype(np.float32)
    _, y = run_forward(layer, x_np)
    assert y.shape == (2, 2, 1, 1)
    w_np, b_np = _layer_arrays(layer)
    expected = np.einsum("oikl,sikl->so", w_np, x_np) + b_np
    assert_close(y[:, :, 0, 0], expected, atol=1e-5, rtol=1e-5)


def test_conv2d_forward_is_idempotent(rng, algo):
    layer = make_layer(algo, 2, 6, 7, 3, 3, rng)
    x_np = rng.normal(size=(2, 2, 6, 7)).astype(np.float32)
    _, y1 = run_forward(layer, x_np)
    _, y2 = run_forward(layer, x_np)
    assert np.array_equal(y1, y2)


def test_conv2d_batch_size_changes_between_calls(rng, algo):
    layer = make_layer(algo, 1, 5, 6, 3, 2, rng)
    x_np = rng.normal(size=(3, 1, 5, 6)).astype(np.float32)
    _, y3 = run_forward(layer, x_np)
    _, y1 = run_forward(layer, x_np[:1])
    assert y1.shape == (1, 2, 3, 4)
    assert layer.y.n0 == 1
    assert_close(y1, y3[:1], atol=1e-6, rtol=1e-6)


def test_conv2d_zero_output_gradient_gives_zero_gradients(rng, algo):
    layer = make_layer(algo, 2, 5, 5, 3, 2, rng)
    run_forward(layer, rng.normal(size=(2, 2, 5, 5)))
    gx, gw, gb = run_backward(layer, np.zeros((2, 2, 3, 3)))
    assert np.all(gx == 0.0)
    assert np.all(gw == 0.0)
    assert np.all(gb == 0.0)


@pytest.mark.parametrize("simd_width", [1, 3, 4, 8, 16])
def test_simd_agrees_with_scalar(rng, simd_width):
    B, IC, H, W, K, OC = 2, 2, 6, 11, 3, 3
    seed = int(rng.integers(1 << 30))
    base = make_layer(Algo.CPU_BASE, IC, H, W, K, OC, np.random.default_rng(seed))
    simd = make_layer(Algo.CPU_SIMD, IC, H, W, K, OC, np.random.default_rng(seed),
                      simd_width=simd_width)
    assert np.array_equal(base.w.to_numpy(), simd.w.to_numpy())

    x_np = rng.normal(size=(B, IC, H, W)).astype(np.float32)
    gy_np = rng.normal(size=(B, OC, H - K + 1, W - K + 1)).astype(np.float32)

    _, y_base = run_forward(base, x_np)
    _, y_simd = run_forward(simd, x_np)
    gx_base, gw_base, gb_base = run_backward(base, gy_np)
    gx_simd, gw_simd, gb_simd = run_backward(simd, gy_np)

    assert np.array_equal(y_base, y_simd)
    assert np.array_equal(gx_base, gx_simd)
    assert_close(gw_simd, gw_base, atol=1e-5, rtol=1e-5)
    assert_close(gb_simd, gb_base, atol=1e-5, rtol=1e-5)


def test_array_kernels_agree_with_scalar_on_host(rng):
    B, IC, H, W, K, OC = 2, 3, 7, 6, 3, 2
    layer = make_layer(Algo.CPU_BASE, IC, H, W, K, OC, rng)
    x_np = rng.normal(size=(B, IC, H, W)).astype(np.float32)
    gy_np = rng.normal(size=(B, OC, H - K + 1, W - K + 1)).astype(np.float32)

    _, y_base = run_forward(layer, x_np)
    gx_base, gw_base, gb_base = run_backward(layer, gy_np)

    w_np, b_np = _layer_arrays(layer)
    y = np.empty_like(y_base)
    conv2d_forward_kernel(np, x_np, w_np, b_np, y)
    gw = np.empty_like(gw_base)
    gb = np.empty_like(gb_base)
    gx = np.empty_like(gx_base)
    conv2d_backward_kernel(np, x_np, w_np, gy_np, gw, gb, gx)

    assert np.array_equal(y, y_base)
    assert np.array_equal(gx, gx_base)
    assert_close(gw, gw_base, atol=1e-5, rtol=1e-5)
    assert_close(gb, gb_base, atol=1e-5, rtol=1e-5)


def test_update_applies_adadelta_to_recorded_gradients(rng, algo):
    layer = make_layer(algo, 2, 6, 6, 3, 3, rng)
    for _ in range(2):
        run_forward(layer, rng.normal(size=(2, 2, 6, 6)))
        _, gw, gb = run_backward(layer, rng.normal(size=(2, 3, 4, 4)))

        before = {}
        for name, g in (("w", gw), ("b", gb)):
            opt = getattr(layer, f"opt_{name}")
            if layer.backend().on_device:
                opt.sync_to_host()
            before[name] = (getattr(layer, name).to_numpy().astype(np.float64), g.astype(np.float64),
                            opt.avg_sq_grad.to_numpy().astype(np.float64),
                            opt.avg_sq_delta.to_numpy().astype(np.float64))

        layer.update()
        if layer.backend().on_device:
            layer.sync_to_host()

        for name, (p0, g, sg, sd) in before.items():
            sg = 0.95 * sg + 0.05 * g * g
            delta = -g * np.sqrt(sd + 1e-6) / np.sqrt(sg + 1e-6)
            p1 = getattr(layer, name).to_numpy()
            assert_close(p1, p0 + delta, atol=1e-6, rtol=1e-4)
            moved = np.abs(g) > 1e-3
            assert np.all(np.sign(p1 - p0)[moved] == -np.sign(g)[moved])


def test_update_is_identical_across_host_backends(rng):
    seed = int(rng.integers(1 << 30))
    layers = [make_layer(a, 1, 5, 7, 3, 2, np.random.default_rng(seed))
              for a in (Algo.CPU_BASE, Algo.CPU_SIMD)]
    x_np = rng.normal(size=(2, 1, 5, 7)).astype(np.float32)
    gy_np = rng.normal(size=(2, 2, 3, 5)).astype(np.float32)
    for layer in layers:
        run_forward(layer, x_np)
        run_backward(layer, gy_np)
        layer.gw.copy_from(layers[0].gw)
        layer.gb.copy_from(layers[0].gb)
        layer.update()
    assert np.array_equal(layers[0].w.to_numpy(), layers[1].w.to_numpy())
    assert np.array_equal(layers[0].b.to_numpy(), layers[1].b.to_numpy())


def test_backends_are_stateless(rng):
    layer = make_layer(Algo.CPU_BASE, 1, 4, 4, 2, 1, rng)
    x_np = rng.normal(size=(1, 1, 4, 4)).astype(np.float32)
    _, y_first = run_forward(layer, x_np)
    layer.opt.algo = Algo.CPU_SIMD
    _, y_simd = run_forward(layer, x_np)
    layer.opt.algo = Algo.CPU_BASE
    _, y_again = run_forward(layer, x_np)
    assert np.array_equal(y_first, y_simd)
    assert np.array_equal(y_first, y_again)
    assert isinstance(layer.backend(), ScalarBackend)
    layer.opt.algo = Algo.CPU_SIMD
    assert isinstance(layer.backend(), SimdBackend)
