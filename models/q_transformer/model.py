"""
model.py (Torch env)

Q-Transformer: autoregressive per-dimension Q-values over discretized actions.
- State encoder: MLP(obs_dim -> dim), one "state token" per observation
- Action tokens: one Linear(action_bins -> dim) per action slot over one-hot bins
- Causal transformer decoder with KV-cache, one action dimension per step
- Dueling head: sigmoid(value + centred advantages) -> Q in (0, 1) per bin
"""

from typing import Callable, Optional

import torch
import torch.nn as nn
import torch.nn.functional as F
from einops import rearrange, repeat
from loguru import logger

from .attend import Attend, exists


def default(val, d):
    return val if exists(val) else d


def xnor(x, y):
    """(True, True) or (False, False) -> True"""
    return not (x ^ y)


class FeedForward(nn.Module):
    def __init__(self, dim, expansion=4, dropout=0.0, adaptive_ln=False):
        super().__init__()
        self.adaptive_ln = adaptive_ln
        inner_dim = int(dim * expansion)

        self.norm = nn.RMSNorm(dim, elementwise_affine=not adaptive_ln)
        self.net = nn.Sequential(
            nn.Linear(dim, inner_dim),
            nn.GELU(),
            nn.Dropout(dropout),
            nn.Linear(inner_dim, dim),
            nn.Dropout(dropout),
        )

    def forward(self, x, cond_fn: Optional[Callable] = None):
        x = self.norm(x)

        assert xnor(self.adaptive_ln, exists(cond_fn)), "cond_fn must be given iff adaptive_ln"
        if exists(cond_fn):
            x = cond_fn(x)

        return self.net(x)


class TransformerAttention(nn.Module):
    """ Multi-head attention layer for self- or cross-attention.
    Args:
        dim: input embedding dimension
        dim_head: dimension of each attention head
        dim_context: context embedding dimension (cross-attention), defaults to dim
        heads: number of heads
        num_mem_kv: learned key/value pairs every query can attend to
        norm_context: normalize the context (required iff a context is passed)
        adaptive_ln: expect a cond_fn applied after the input norm
        dropout: attention + output dropout
        flash: use the fused attention kernel
        causal: causal self-attention

    Returns:
        out: (B, N, dim), and the (2, B, H, N_total, dim_head) cache if return_cache
    """
    def __init__(
        self,
        dim,
        dim_head=64,
        dim_context=None,
        heads=8,
        num_mem_kv=4,
        norm_context=False,
        adaptive_ln=False,
        dropout=0.1,
        flash=True,
        causal=False,
    ):
        super().__init__()
        self.heads = heads
        inner_dim = dim_head * heads
        dim_context = default(dim_context, dim)

        self.adaptive_ln = adaptive_ln
        self.norm = nn.RMSNorm(dim, elementwise_affine=not adaptive_ln)
        self.context_norm = nn.RMSNorm(dim_context) if norm_context else None

        self.to_q = nn.Linear(dim, inner_dim, bias=False)
        self.to_kv = nn.Linear(dim_context, inner_dim * 2, bias=False)

        self.num_mem_kv = num_mem_kv
        self.mem_kv = None
        if num_mem_kv > 0:
            self.mem_kv = nn.Parameter(torch.randn(2, heads, num_mem_kv, dim_head))

        self.attend = Attend(dropout=dropout, flash=flash, causal=causal)

        self.to_out = nn.Sequential(
            nn.Linear(inner_dim, dim, bias=False),
            nn.Dropout(dropout),
        )

    def forward(
        self,
        x,
        context=None,
        mask=None,
        attn_mask=None,
        cond_fn: Optional[Callable] = None,
        cache: Optional[torch.Tensor] = None,
        return_cache=False,
    ):
        b = x.shape[0]

        assert xnor(exists(context), exists(self.context_norm)), "context must be given iff norm_context"
        if exists(context):
            context = self.context_norm(context)

        x = self.norm(x)

        assert xnor(exists(cond_fn), self.adaptive_ln), "cond_fn must be given iff adaptive_ln"
        if exists(cond_fn):
            x = cond_fn(x)

        kv_input = default(context, x)

        q, k, v = self.to_q(x), *self.to_kv(kv_input).chunk(2, dim=-1)
        q, k, v = (rearrange(t, "b n (h d) -> b h n d", h=self.heads) for t in (q, k, v))

        if exists(cache):
            ck, cv = cache
            k = torch.cat((ck, k), dim=-2)
            v = torch.cat((cv, v), dim=-2)

        new_kv_cache = torch.stack((k, v))  # (2, B, H, N_total, D)

        if exists(self.mem_kv):
            mk, mv = (repeat(t, "... -> b ...", b=b) for t in self.mem_kv)
            k = torch.cat((mk, k), dim=-2)
            v = torch.cat((mv, v), dim=-2)

            if exists(mask):
                mask = F.pad(mask, (self.num_mem_kv, 0), value=True)
            if exists(attn_mask):
                attn_mask = F.pad(attn_mask, (self.num_mem_kv, 0), value=True)

        out = self.attend(q, k, v, mask=mask, attn_mask=attn_mask)

        out = rearrange(out, "b h n d -> b n (h d)")
        out = self.to_out(out)

        if not return_cache:
            return out

        return out, new_kv_cache


class Transformer(nn.Module):
    def __init__(
        self,
        dim,
        dim_head=64,
        heads=8,
        depth=6,
        num_mem_kv=4,
        attn_dropout=0.0,
        ff_dropout=0.0,
        adaptive_ln=False,
        flash_attn=True,
        cross_attend=False,
        causal=False,
        final_norm=False,
    ):
        super().__init__()
        attn_kwargs = dict(
            dim=dim,
            heads=heads,
            dim_head=dim_head,
            num_mem_kv=num_mem_kv,
            dropout=attn_dropout,
            flash=flash_attn,
        )

        self.layers = nn.ModuleList([])
        for _ in range(depth):
            self.layers.append(nn.ModuleList([
                TransformerAttention(**attn_kwargs, causal=causal, adaptive_ln=adaptive_ln, norm_context=False),
                TransformerAttention(**attn_kwargs, norm_context=True) if cross_attend else None,
                FeedForward(dim, dropout=ff_dropout, adaptive_ln=adaptive_ln),
            ]))

        self.norm = nn.RMSNorm(dim) if final_norm else nn.Identity()

    def forward(
        self,
        x,
        cond_fns=None,
        mask=None,
        attn_mask=None,
        context: Optional[torch.Tensor] = None,
        cache: Optional[torch.Tensor] = None,
        return_cache=False,
    ):
        """
        x:      (B, N, D)
        cache:  (depth, 2, B, H, N-1, dim_head), only the last token of x is computed
        returns (B, N, D) [, (depth, 2, B, H, N, dim_head)]
        """
        has_cache = exists(cache)

        if has_cache:
            assert cache.shape[0] == len(self.layers), "cache depth does not match the number of layers"
            assert cache.shape[-2] == x.shape[-2] - 1, "cache must hold exactly the previous tokens"
            x_prev, x = x[..., :-1, :], x[..., -1:, :]

            # only the last query row survives
            if exists(attn_mask) and attn_mask.ndim >= 2:
                attn_mask = attn_mask[..., -1:, :]

        cond_fns = iter(default(cond_fns, []))
        cache = iter(default(cache, []))

        new_caches = []

        for attn, maybe_cross_attn, ff in self.layers:
            attn_out, new_cache = attn(
                x,
                mask=mask,
                attn_mask=attn_mask,
                cond_fn=next(cond_fns, None),
                cache=next(cache, None),
                return_cache=True,
            )
            new_caches.append(new_cache)

            x = x + attn_out  # skip connection

            if exists(maybe_cross_attn):
                assert exists(context), "cross-attending transformer needs a context"
                x = x + maybe_cross_attn(x, context=context)

            x = x + ff(x, cond_fn=next(cond_fns, None))

        new_caches = torch.stack(new_caches)

        if has_cache:
            x = torch.cat((x_prev, x), dim=-2)

        out = self.norm(x)

        if not return_cache:
            return out

        return out, new_caches


class AdaptiveScale(nn.Module):
    """
    Turns a conditioning vector into a cond_fn for adaptive_ln layers:
    x_norm -> x_norm * (1 + scale(cond)). Starts as identity (zero init).
    """
    def __init__(self, dim: int, cond_dim: int):
        super().__init__()
        self.to_scale = nn.Sequential(
            nn.SiLU(),
            nn.Linear(cond_dim, dim, bias=True),
        )
        nn.init.zeros_(self.to_scale[-1].weight)
        nn.init.zeros_(self.to_scale[-1].bias)

    def forward(self, cond: torch.Tensor) -> Callable:
        scale = self.to_scale(cond).unsqueeze(1)  # (B, 1, D)

        def cond_fn(x):
            return x * (1.0 + scale)

        return cond_fn


class DuelingHead(nn.Module):
    def __init__(self, dim, expansion=2, action_bins=256):
        super().__init__()
        dim_hidden = dim * expansion

        self.stem = nn.Sequential(
            nn.Linear(dim, dim_hidden),
            nn.SiLU(),
        )
        self.to_values = nn.Linear(dim_hidden, 1)
        self.to_advantages = nn.Linear(dim_hidden, action_bins)

    def value_and_advantages(self, x):
        x = self.stem(x)

        advantages = self.to_advantages(x)
        advantages = advantages - advantages.mean(dim=-1, keepdim=True)

        values = self.to_values(x)
        return values, advantages

    def forward(self, x):
        values, advantages = self.value_and_advantages(x)
        return (values + advantages).sigmoid()


class QValueHead(nn.Module):
    """ Non-dueling head: MLP straight to per-bin Q-values. """
    def __init__(self, dim, action_bins=256):
        super().__init__()
        self.net = nn.Sequential(
            nn.Linear(dim, action_bins),
            nn.ReLU(),
            nn.Linear(action_bins, action_bins),
        )
        self.init_weights()

    def init_weights(self):
        for layer in (self.net[0], self.net[-1]):
            nn.init.kaiming_normal_(layer.weight)
            with torch.no_grad():
                layer.bias.zero_().add_(0.5)

    def forward(self, x):
        return self.net(x).sigmoid()


class ActionEmbedding(nn.Module):
    """ One independent Linear(action_bins -> dim) per action slot. """
    def __init__(self, dim, action_bins, num_slots):
        super().__init__()
        self.action_bins = action_bins
        self.slots = nn.ModuleList([nn.Linear(action_bins, dim) for _ in range(num_slots)])

    def forward(self, actions):
        # actions: (B, n) long bin indices
        n = actions.shape[1]
        assert n <= len(self.slots), f"got {n} actions for {len(self.slots)} embedding slots"

        one_hot = F.one_hot(actions, num_classes=self.action_bins)
        one_hot = one_hot.to(dtype=self.slots[0].weight.dtype)  # (B, n, bins)
        tokens = [slot(one_hot[:, i]) for i, slot in enumerate(self.slots[:n])]
        return torch.stack(tokens, dim=1)  # (B, n, D)


class StateEncoder(nn.Module):
    def __init__(self, obs_dim, dim, hidden_dim=256):
        super().__init__()
        self.net = nn.Sequential(
            nn.Linear(obs_dim, hidden_dim),
            nn.ReLU(),
            nn.Linear(hidden_dim, dim),
        )

    def forward(self, x):
        return self.net(x).unsqueeze(1)  # (B, 1, D)


class QHeadMultipleActions(nn.Module):
    """
    Token layout: [state, state, a_0, ..., a_{k-1}]
    The second state token is the decode-start slot. Position p + 1 predicts
    the Q-values of action dimension p, so only the first num_actions - 1
    actions are ever embedded.
    """
    def __init__(
        self,
        dim,
        *,
        num_actions,
        action_bins,
        attn_depth=2,
        attn_dim_head=32,
        attn_heads=8,
        num_mem_kv=4,
        attn_dropout=0.0,
        ff_dropout=0.0,
        dueling=True,
        flash_attn=True,
        cross_attend=False,
    ):
        super().__init__()
        self.num_actions = num_actions
        self.action_bins = action_bins
        self.cross_attend = cross_attend

        self.transformer = Transformer(
            dim=dim,
            depth=attn_depth,
            dim_head=attn_dim_head,
            heads=attn_heads,
            num_mem_kv=num_mem_kv,
            attn_dropout=attn_dropout,
            ff_dropout=ff_dropout,
            flash_attn=flash_attn,
            cross_attend=cross_attend,
            causal=True,
            final_norm=True,
        )

        self.action_embed = ActionEmbedding(dim, action_bins, num_slots=num_actions - 1)

        if dueling:
            self.to_q_values = DuelingHead(dim, action_bins=action_bins)
        else:
            self.to_q_values = QValueHead(dim, action_bins=action_bins)

    @property
    def device(self):
        return next(self.parameters()).device

    def get_random_actions(self, batch_size=1):
        return torch.randint(0, self.action_bins, (batch_size, self.num_actions), device=self.device)

    def state_append_actions(self, state, actions: Optional[torch.Tensor] = None):
        tokens = [state, state]

        if exists(actions):
            actions = actions[:, : self.num_actions - 1]
            if actions.shape[1] > 0:
                tokens.append(self.action_embed(actions))

        return torch.cat(tokens, dim=1)

    def _context(self, encoded_state):
        return encoded_state if self.cross_attend else None

    def forward(self, encoded_state: torch.Tensor, actions: Optional[torch.Tensor] = None):
        """
        encoded_state: (B, 1, D)
        actions:       (B, k) known action bins, k <= num_actions
        returns:       (B, min(k + 1, num_actions), action_bins)
        """
        tokens = self.state_append_actions(encoded_state, actions=actions)
        embed = self.transformer(tokens, context=self._context(encoded_state))
        return self.to_q_values(embed[:, 1:, :])

    @torch.no_grad()
    def get_optimal_actions(self, encoded_state):
        # greedy decode never uses dropout, restore the caller's mode afterwards
        was_training = self.training
        self.eval()
        try:
            return self._greedy_decode(encoded_state)
        finally:
            self.train(was_training)

    def _greedy_decode(self, encoded_state):
        batch_size = encoded_state.shape[0]
        action_bins = torch.empty(
            batch_size, self.num_actions, device=encoded_state.device, dtype=torch.long
        )

        cache = None
        tokens = self.state_append_actions(encoded_state)

        for action_idx in range(self.num_actions):
            embed, cache = self.transformer(
                tokens, context=self._context(encoded_state), cache=cache, return_cache=True
            )
            q_values = self.to_q_values(embed[:, -1, :])  # (B, bins)

            # first maximal bin wins on ties
            _, selected = q_values.max(dim=-1)
            action_bins[:, action_idx] = selected

            if action_idx < self.num_actions - 1:
                tokens = self.state_append_actions(encoded_state, actions=action_bins[:, : action_idx + 1])

        return action_bins


def init_weights(module: nn.Module):
    if isinstance(module, nn.Linear):
        nn.init.normal_(module.weight, mean=0.0, std=0.02)
        if module.bias is not None:
            nn.init.zeros_(module.bias)

    elif isinstance(module, nn.RMSNorm):
        if module.weight is not None:
            nn.init.ones_(module.weight)


class QTransformer(nn.Module):
    def __init__(
        self,
        obs_dim=11,
        num_actions=7,
        action_bins=256,
        dim=512,
        depth=2,
        heads=8,
        dim_head=64,
        num_mem_kv=4,
        attn_dropout=0.0,
        ff_dropout=0.0,
        dueling=True,
        flash=True,
        cross_attend=False,
        state_hidden_dim=256,
    ):
        super().__init__()
        assert num_actions >= 1
        assert action_bins >= 2

        self.obs_dim = obs_dim
        self.num_actions = num_actions
        self.action_bins = action_bins

        self.state_encode = StateEncoder(obs_dim, dim, hidden_dim=state_hidden_dim)

        self.q_head = QHeadMultipleActions(
            dim,
            num_actions=num_actions,
            action_bins=action_bins,
            attn_depth=depth,
            attn_dim_head=dim_head,
            attn_heads=heads,
            num_mem_kv=num_mem_kv,
            attn_dropout=attn_dropout,
            ff_dropout=ff_dropout,
            dueling=dueling,
            flash_attn=flash,
            cross_attend=cross_attend,
        )

        self.apply(init_weights)
        if isinstance(self.q_head.to_q_values, QValueHead):
            self.q_head.to_q_values.init_weights()

        logger.info(
            f"QTransformer | obs_dim={obs_dim} actions={num_actions}x{action_bins} dim={dim} "
            f"depth={depth} heads={heads} attention={'fused' if flash else 'explicit'} "
            f"params={sum(p.numel() for p in self.parameters()):,}"
        )

    @property
    def device(self):
        return next(self.parameters()).device

    def get_random_actions(self, batch_size=1):
        return self.q_head.get_random_actions(batch_size)

    def encode(self, state: torch.Tensor) -> torch.Tensor:
        """ (B, obs_dim) -> (B, 1, D) """
        assert state.ndim == 2 and state.shape[-1] == self.obs_dim, \
            f"expected observations (B, {self.obs_dim}), got {tuple(state.shape)}"
        return self.state_encode(state.to(self.device))

    def predict_q_values(self, encoded_state: torch.Tensor, actions: Optional[torch.Tensor] = None):
        if exists(actions):
            actions = actions.to(self.device).long()
            assert actions.ndim == 2 and actions.shape[1] <= self.num_actions
            if actions.numel() > 0:
                assert actions.min() >= 0 and actions.max() < self.action_bins, "action bin out of range"
        return self.q_head(encoded_state, actions=actions)

    @torch.no_grad()
    def select_actions(self, state: torch.Tensor) -> torch.Tensor:
        """ greedy autoregressive decode: (B, obs_dim) -> (B, num_actions) long """
        encoded_state = self.encode(state)
        return self.q_head.get_optimal_actions(encoded_state)

    get_actions = select_actions

    def forward(self, state: torch.Tensor, actions: Optional[torch.Tensor] = None):
        """
        state:   (B, obs_dim)
        actions: (B, num_actions) dataset action bins (teacher forcing)
        returns: (B, num_actions, action_bins) Q-values in (0, 1)
        """
        encoded_state = self.encode(state)
        return self.predict_q_values(encoded_state, actions=actions)
