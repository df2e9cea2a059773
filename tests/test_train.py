import copy
import math

import pytest
import torch

from models.q_transformer import ModelConfig, QTransformer, ReplayMemoryDataset, TrainConfig, train_qtransformer
from models.q_transformer.train import (
    batch_select_indices,
    conservative_loss,
    eval_action_agreement,
    eval_td_loss,
    q_learning_loss,
    update_target,
)
from models.q_transformer.data import make_dataloader


def _dataset(n=48, num_actions=3, action_bins=16):
    return ReplayMemoryDataset(
        observations=torch.randn(n, 11),
        actions=torch.randint(0, action_bins, (n, num_actions)),
        rewards=torch.rand(n),
        next_observations=torch.randn(n, 11),
        dones=(torch.rand(n) < 0.1),
        action_bins=action_bins,
    )


def _model_cfg(num_actions=3, action_bins=16):
    return ModelConfig(
        obs_dim=11, num_actions=num_actions, action_bins=action_bins,
        dim=16, depth=1, heads=2, dim_head=8, num_mem_kv=1, state_hidden_dim=16,
    )


def _model(model_cfg):
    return QTransformer(**model_cfg.__dict__)


def _batch(ds):
    return next(iter(make_dataloader(ds, batch_size=8, shuffle=False)))


def test_batch_select_indices():
    q = torch.arange(24.0).reshape(2, 3, 4)
    idx = torch.tensor([[0, 3, 1], [2, 2, 0]])
    assert batch_select_indices(q, idx).tolist() == [[0.0, 7.0, 9.0], [14.0, 18.0, 20.0]]


def test_conservative_loss_ignores_dataset_actions():
    q = torch.full((2, 3, 4), 0.5)
    actions = torch.zeros(2, 3, dtype=torch.long)
    assert math.isclose(conservative_loss(q, actions, min_reward=0.0).item(), 0.25, rel_tol=1e-6)

    # only the taken bin is off target
    q = torch.zeros(2, 3, 4)
    q[..., 0] = 0.9
    assert conservative_loss(q, actions, min_reward=0.0).item() == 0.0


def test_q_learning_loss_is_finite_and_trains_only_the_online_model():
    cfg = _model_cfg()
    model = _model(cfg)
    target = copy.deepcopy(model).eval().requires_grad_(False)
    batch = _batch(_dataset())

    td, q_all = q_learning_loss(model, target, batch, gamma=0.9)
    assert q_all.shape == (8, 3, 16)
    assert torch.isfinite(td)

    td.backward()
    assert any(p.grad is not None and p.grad.abs().sum() > 0 for p in model.parameters())
    assert all(p.grad is None for p in target.parameters())


def test_q_learning_loss_last_dim_uses_reward_when_done():
    cfg = _model_cfg(num_actions=1)
    model = _model(cfg).eval()
    states, actions, _, next_states, _ = _batch(_dataset(num_actions=1))
    rewards = torch.full((8,), 0.3)
    dones = torch.ones(8)

    td, q_all = q_learning_loss(model, model, (states, actions, rewards, next_states, dones), gamma=0.99)
    q_pred = batch_select_indices(q_all, actions)[:, 0]
    assert torch.allclose(td, ((q_pred - 0.3) ** 2).mean())


def test_update_target():
    cfg = _model_cfg()
    model, target = _model(cfg), _model(cfg)

    update_target(target, model, tau=1.0)
    for p_target, p in zip(target.parameters(), model.parameters()):
        assert torch.equal(p_target, p)


def test_eval_helpers():
    cfg = _model_cfg()
    model = _model(cfg)
    loader = make_dataloader(_dataset(n=16), batch_size=8, shuffle=False)

    td, cons = eval_td_loss(model, model, loader, device="cpu")
    assert math.isfinite(td) and math.isfinite(cons)

    match_rate, bin_err = eval_action_agreement(model, loader, device="cpu")
    assert 0.0 <= match_rate <= 1.0
    assert 0.0 <= bin_err < 16


def test_train_smoke(tmp_path):
    model_cfg = _model_cfg()
    cfg = TrainConfig(
        batch_size=16, train_epoch=2, eval_every=3, eval_samples=16, log_every=1,
        device="cpu", use_wandb=False, ckpt_dir=str(tmp_path),
    )

    stats = train_qtransformer(_model(model_cfg), _dataset(), _dataset(n=16), cfg, model_cfg=model_cfg)

    assert stats["steps"] == 6
    assert math.isfinite(stats["final_train_loss"])
    assert math.isfinite(stats["best_test_td_loss"])

    ckpt = torch.load(tmp_path / "q_transformer_best.pt", map_location="cpu", weights_only=False)
    assert ckpt["model_config"]["action_bins"] == 16
    restored = _model(model_cfg)
    restored.load_state_dict(ckpt["model_state"])


def test_train_stops_at_max_steps(tmp_path):
    model_cfg = _model_cfg()
    cfg = TrainConfig(
        batch_size=16, train_epoch=5, max_steps=4, eval_every=100, log_every=2,
        device="cpu", use_wandb=False, ckpt_dir=str(tmp_path),
    )

    stats = train_qtransformer(_model(model_cfg), _dataset(), _dataset(n=16), cfg)
    assert stats["steps"] == 4
    assert stats["best_test_td_loss"] == float("inf")


def test_train_rejects_empty_evaluation(tmp_path):
    model_cfg = _model_cfg()
    cfg = TrainConfig(eval_samples=0, device="cpu", use_wandb=False, ckpt_dir=str(tmp_path))

    with pytest.raises(ValueError):
        train_qtransformer(_model(model_cfg), _dataset(), _dataset(n=16), cfg)
