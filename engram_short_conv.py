from __future__ import annotations

import torch
import torch.nn as nn


class ShortConv(nn.Module):
    """Depthwise causal convolution along the sequence axis.

    RMSNorm before and SiLU after the conv are per position, so output[t] only
    depends on input[t - kernel_size + 1 .. t], with zeros before position 0.
    """

    def __init__(self, hidden_size: int, kernel_size: int = 4, norm_eps: float = 1e-5):
        super().__init__()
        self.kernel_size = kernel_size

        self.conv = nn.Conv1d(
            in_channels=hidden_size,
            out_channels=hidden_size,
            kernel_size=kernel_size,
            groups=hidden_size,
            bias=False,
            padding=kernel_size - 1,
        )
        self.norm = nn.RMSNorm(hidden_size, eps=norm_eps)
        self.act_fn = nn.SiLU()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Input:  (L,D) or (B,L,D)
        Output: same shape
        """
        squeeze = x.dim() == 2
        if squeeze:
            x = x.unsqueeze(0)
        B, T, C = x.shape

        x_bct = self.norm(x).transpose(1, 2)
        # symmetric padding from Conv1d; keeping the first T outputs drops the right-hand (future) side
        y_bct = self.act_fn(self.conv(x_bct)[..., :T])
        y = y_bct.transpose(1, 2).contiguous()

        return y[0] if squeeze else y
