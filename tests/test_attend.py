import pytest
import torch

from models.q_transformer.attend import Attend, causal_mask


def _qkv(b=2, h=3, i=5, j=5, d=8):
    return torch.randn(b, h, i, d), torch.randn(b, h, j, d), torch.randn(b, h, j, d)


def test_causal_mask_is_offset_by_length_difference():
    # 2 queries over 4 keys: query 0 sees keys 0..2, query 1 sees all
    expected = torch.tensor([
        [False, False, False, True],
        [False, False, False, False],
    ])
    assert torch.equal(causal_mask(2, 4, "cpu"), expected)


@pytest.mark.parametrize("causal", [False, True])
def test_fused_matches_explicit(causal):
    q, k, v = _qkv(j=7, i=7)
    mask = torch.ones(2, 7, dtype=torch.bool)
    mask[0, -2:] = False

    explicit = Attend(causal=causal, flash=False).eval()
    fused = Attend(causal=causal, flash=True).eval()

    out_explicit = explicit(q, k, v, mask=mask)
    out_fused = fused(q, k, v, mask=mask)
    assert torch.allclose(out_explicit, out_fused, atol=1e-5)


@pytest.mark.parametrize("flash", [False, True])
def test_causal_last_query_matches_full_sequence(flash):
    q, k, v = _qkv(i=6, j=6)
    attend = Attend(causal=True, flash=flash).eval()

    full = attend(q, k, v)
    last = attend(q[:, :, -1:], k, v)
    assert torch.allclose(full[:, :, -1:], last, atol=1e-6)


@pytest.mark.parametrize("flash", [False, True])
def test_padding_mask_hides_keys(flash):
    q, k, v = _qkv()
    mask = torch.ones(2, 5, dtype=torch.bool)
    mask[:, 3] = False
    attend = Attend(flash=flash).eval()

    out = attend(q, k, v, mask=mask)
    v2 = v.clone()
    v2[:, :, 3] += 100.0
    k2 = k.clone()
    k2[:, :, 3] -= 7.0
    assert torch.allclose(out, attend(q, k2, v2, mask=mask), atol=1e-6)


@pytest.mark.parametrize("flash", [False, True])
def test_padding_and_attn_masks_are_combined(flash):
    q, k, v = _qkv()
    mask = torch.ones(2, 5, dtype=torch.bool)
    mask[:, 0] = False
    attn_mask = torch.ones(5, 5, dtype=torch.bool)
    attn_mask[:, 4] = False

    attend = Attend(flash=flash).eval()
    out = attend(q, k, v, mask=mask, attn_mask=attn_mask)

    both = torch.ones(2, 5, dtype=torch.bool)
    both[:, 0] = False
    both[:, 4] = False
    assert torch.allclose(out, attend(q, k, v, mask=both), atol=1e-6)


@pytest.mark.parametrize("flash", [False, True])
def test_fully_masked_rows_stay_finite(flash):
    q, k, v = _qkv()
    mask = torch.zeros(2, 5, dtype=torch.bool)
    out = Attend(flash=flash).eval()(q, k, v, mask=mask)
    assert torch.isfinite(out).all()


def test_shape_mismatch_is_rejected():
    q, k, v = _qkv()
    with pytest.raises(AssertionError):
        Attend()(q, k[..., :4], v[..., :4])
    with pytest.raises(AssertionError):
        Attend()(q, k[:, :2], v[:, :2])
