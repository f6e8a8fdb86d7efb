import pytest
import torch

from engram_short_conv import ShortConv


D, T, C = 16, 12, 3


@pytest.fixture
def conv():
    torch.manual_seed(0)
    return ShortConv(hidden_size=D, kernel_size=C).eval()


class TestShortConv:
    def test_shapes(self, conv):
        x = torch.randn(T, D)
        assert conv(x).shape == (T, D)
        assert conv(x.expand(2, T, D)).shape == (2, T, D)

    def test_unbatched_matches_batched(self, conv):
        x = torch.randn(T, D)
        torch.testing.assert_close(conv(x), conv(x.unsqueeze(0))[0])

    def test_causal(self, conv):
        x = torch.randn(T, D)
        y = x.clone()
        y[7] += 10.0
        a, b = conv(x), conv(y)
        torch.testing.assert_close(a[:7], b[:7])
        assert not torch.allclose(a[7], b[7])

    def test_receptive_field_is_kernel_size(self, conv):
        x = torch.randn(T, D)
        y = x.clone()
        y[0] += 10.0
        a, b = conv(x), conv(y)
        # position 0 only reaches outputs 0..C-1
        torch.testing.assert_close(a[C:], b[C:])
        assert not torch.allclose(a[C - 1], b[C - 1])

    def test_zero_in_zero_out(self, conv):
        assert torch.equal(conv(torch.zeros(T, D)), torch.zeros(T, D))

    def test_depthwise(self, conv):
        assert conv.conv.weight.shape == (D, 1, C)
        assert conv.conv.bias is None

    def test_norm_conv_silu_pipeline(self, conv):
        x = torch.randn(T, D)
        with torch.no_grad():
            expected = torch.nn.functional.silu(conv.conv(conv.norm(x).T)[..., :T]).T
        torch.testing.assert_close(conv(x), expected)
        # SiLU is bounded below by about -0.2785
        assert conv(x * 50.0).min() > -0.28
