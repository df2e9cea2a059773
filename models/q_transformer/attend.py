import torch
import torch.nn as nn
import torch.nn.functional as F
from einops import rearrange


def exists(val):
    return val is not None


def maybe_reduce_mask_and(*maybe_masks):
    maybe_masks = [m for m in maybe_masks if exists(m)]

    if len(maybe_masks) == 0:
        return None

    mask, *rest_masks = maybe_masks
    for rest_mask in rest_masks:
        mask = mask & rest_mask
    return mask


def causal_mask(i, j, device):
    """ True where the query may NOT attend.
    Bottom-right aligned: with j > i (cached or memory keys in front),
    query i' sees every key up to i' + (j - i).
    """
    return torch.ones((i, j), dtype=torch.bool, device=device).triu(j - i + 1)


class Attend(nn.Module):
    """ Scaled dot-product attention kernel.
    Args:
        dropout: attention dropout (training only)
        flash: use torch's fused scaled_dot_product_attention
        causal: apply a causal mask offset by the key/query length difference

    forward:
        q: (B, H, i, D)
        k, v: (B, H, j, D)
        mask: (B, j) bool padding mask, True = keep
        attn_mask: bool, broadcastable to (B, H, i, j), True = keep
    Returns:
        out: (B, H, i, D)
    """
    def __init__(self, dropout=0.0, flash=False, causal=False):
        super().__init__()
        self.dropout = dropout
        self.attn_dropout = nn.Dropout(dropout)
        self.causal = causal
        self.flash = flash

    def flash_attn(self, q, k, v, mask=None, attn_mask=None):
        i, j = q.shape[-2], k.shape[-2]

        if self.causal:
            attn_mask = maybe_reduce_mask_and(attn_mask, ~causal_mask(i, j, q.device))

        mask = maybe_reduce_mask_and(mask, attn_mask)

        # boolean masks give nan on fully masked rows, so fold into an additive mask
        if exists(mask):
            bias = torch.zeros(mask.shape, dtype=q.dtype, device=q.device)
            mask = bias.masked_fill(~mask, -torch.finfo(q.dtype).max)

        return F.scaled_dot_product_attention(
            q, k, v,
            attn_mask=mask,
            dropout_p=self.dropout if self.training else 0.0,
        )

    def forward(self, q, k, v, mask=None, attn_mask=None):
        assert q.ndim == 4 and k.shape == v.shape, "expected q (b,h,i,d) and k, v (b,h,j,d)"
        assert q.shape[:2] == k.shape[:2], "batch / head mismatch between queries and keys"
        assert q.shape[-1] == k.shape[-1], "feature dim mismatch between queries and keys"

        if exists(mask) and mask.ndim != 4:
            mask = rearrange(mask, "b j -> b 1 1 j")

        if self.flash:
            return self.flash_attn(q, k, v, mask=mask, attn_mask=attn_mask)

        scale = q.shape[-1] ** -0.5
        mask_value = -torch.finfo(q.dtype).max

        sim = (q @ k.transpose(-2, -1)) * scale  # (B, H, i, j)

        if self.causal:
            i, j = sim.shape[-2:]
            sim = sim.masked_fill(causal_mask(i, j, sim.device), mask_value)

        mask = maybe_reduce_mask_and(mask, attn_mask)
        if exists(mask):
            sim = sim.masked_fill(~mask, mask_value)

        attn = sim.softmax(dim=-1)
        attn = self.attn_dropout(attn)

        return attn @ v
