import copy
import os
from dataclasses import asdict
from typing import Dict, Optional

import torch
import torch.nn.functional as F
import wandb
from loguru import logger

from .config import ModelConfig, TrainConfig, set_seed
from .data import make_dataloader, make_fixed_eval_subset


def batch_select_indices(t, indices):
    # t: (B, n, bins), indices: (B, n) -> (B, n)
    return t.gather(-1, indices.unsqueeze(-1)).squeeze(-1)


def q_learning_loss(model, target_model, batch, gamma=0.99):
    """
    Autoregressive TD loss over action dimensions.
      dim d < n-1: Q(s, a_<d, a_d) -> max_a Q_target(s, a_<=d, a)   (next dim, same state)
      dim n-1:     Q(s, a_<n-1, a_n-1) -> r + gamma * (1 - done) * max_a Q_target(s', a)
    Returns (td_loss, q_pred_all) with q_pred_all (B, n, bins).
    """
    states, actions, rewards, next_states, dones = batch

    q_pred_all = model(states, actions)                     # (B, n, bins)
    q_pred = batch_select_indices(q_pred_all, actions)      # (B, n)

    with torch.no_grad():
        q_next = target_model(next_states).amax(dim=-1)[:, 0]            # (B,)
        q_target = target_model(states, actions).amax(dim=-1)           # (B, n)
        q_target_last = rewards + gamma * (1.0 - dones) * q_next         # (B,)

    loss_last = F.mse_loss(q_pred[:, -1], q_target_last)

    if q_pred.shape[1] == 1:
        return loss_last, q_pred_all

    loss_rest = F.mse_loss(q_pred[:, :-1], q_target[:, 1:])
    return loss_rest + loss_last, q_pred_all


def conservative_loss(q_pred_all, actions, min_reward=0.0):
    """ push Q of every bin the dataset did not take toward min_reward """
    action_bins = q_pred_all.shape[-1]
    taken = F.one_hot(actions, num_classes=action_bins).bool()
    q = q_pred_all.masked_fill(taken, min_reward)
    return ((q - min_reward) ** 2).sum(dim=-1).div(action_bins - 1).mean()


@torch.no_grad()
def update_target(target_model, model, tau=0.005):
    for p_target, p in zip(target_model.parameters(), model.parameters()):
        p_target.lerp_(p, tau)


def _to_device(batch, device):
    return tuple(t.to(device) for t in batch)


@torch.no_grad()
def eval_td_loss(model, target_model, loader, gamma=0.99, min_reward=0.0, device="cuda"):
    model.eval()
    td_sum = 0.0
    cons_sum = 0.0
    count = 0

    for batch in loader:
        batch = _to_device(batch, device)
        td, q_pred_all = q_learning_loss(model, target_model, batch, gamma=gamma)
        td_sum += td.item()
        cons_sum += conservative_loss(q_pred_all, batch[1], min_reward).item()
        count += 1

    return td_sum / count, cons_sum / count


@torch.no_grad()
def eval_action_agreement(model, loader, device="cuda"):
    """
    Greedy decode vs dataset actions.
    Returns (exact bin match rate, mean |bin error|).
    """
    model.eval()
    match = 0
    abs_err = 0.0
    count = 0

    for states, actions, *_ in loader:
        states = states.to(device)
        actions = actions.to(device)

        pred = model.select_actions(states)
        match += (pred == actions).sum().item()
        abs_err += (pred - actions).abs().sum().item()
        count += actions.numel()

    return match / count, abs_err / count


def train_qtransformer(model, train_ds, test_ds, cfg: TrainConfig,
                       model_cfg: Optional[ModelConfig] = None) -> Dict[str, float]:
    if cfg.eval_every <= 0 or cfg.log_every <= 0:
        raise ValueError("eval_every and log_every must be positive")
    if cfg.eval_samples <= 0 or len(test_ds) == 0:
        raise ValueError("evaluation needs eval_samples > 0 and a non-empty test set")

    set_seed(cfg.seed)
    device = cfg.device
    model = model.to(device)
    model.train()

    target_model = copy.deepcopy(model).eval()
    target_model.requires_grad_(False)

    opt = torch.optim.AdamW(model.parameters(), lr=cfg.lr, weight_decay=cfg.weight_decay)

    train_loader = make_dataloader(train_ds, cfg.batch_size, shuffle=True, seed=cfg.seed)
    eval_subset = make_fixed_eval_subset(test_ds, num_samples=cfg.eval_samples, seed=123)
    eval_loader = make_dataloader(eval_subset, cfg.batch_size, shuffle=False)

    os.makedirs(cfg.ckpt_dir, exist_ok=True)
    ckpt_path = os.path.join(cfg.ckpt_dir, "q_transformer_best.pt")

    best_test_td_loss = float("inf")
    last_loss = float("nan")
    step = 0
    stop = False

    # --- init W&B (minimal) ---
    use_wandb = cfg.use_wandb
    if use_wandb:
        wandb.init(
            project=cfg.wandb_project,
            name=f"q_transformer_lr{cfg.lr}_gamma{cfg.gamma}_seed{cfg.seed}",
            config={**cfg.__dict__, **(asdict(model_cfg) if model_cfg is not None else {})},
        )
        wandb.define_metric("train/*", step_metric="step")
        wandb.define_metric("eval/*", step_metric="step")
        wandb.define_metric("grad/*", step_metric="step")
        wandb.define_metric("optim/*", step_metric="step")

    try:
        for epoch in range(cfg.train_epoch):
            for batch in train_loader:
                step += 1
                batch = _to_device(batch, device)

                td_loss, q_pred_all = q_learning_loss(model, target_model, batch, gamma=cfg.gamma)
                cons_loss = conservative_loss(q_pred_all, batch[1], min_reward=cfg.min_reward)
                loss = td_loss + cfg.conservative_weight * cons_loss

                opt.zero_grad(set_to_none=True)
                loss.backward()
                clip_norm = torch.nn.utils.clip_grad_norm_(model.parameters(), cfg.grad_clip)
                opt.step()

                update_target(target_model, model, tau=cfg.target_tau)
                last_loss = loss.item()

                if step % cfg.log_every == 0:
                    logger.info(
                        f"epoch {epoch:4d} | step {step:6d} | loss {last_loss:.6f} "
                        f"| td {td_loss.item():.6f} | conservative {cons_loss.item():.6f}"
                    )
                    if use_wandb:
                        wandb.log(
                            {
                                "step": step,
                                "train/loss": float(last_loss),
                                "train/td_loss": float(td_loss.item()),
                                "train/conservative_loss": float(cons_loss.item()),
                                "train/q_mean": float(q_pred_all.mean().item()),
                                "grad/clip_norm": float(clip_norm),
                                "optim/lr": float(opt.param_groups[0]["lr"]),
                            },
                            step=step,
                        )

                if step % cfg.eval_every == 0:
                    test_td, test_cons = eval_td_loss(
                        model, target_model, eval_loader,
                        gamma=cfg.gamma, min_reward=cfg.min_reward, device=device,
                    )
                    match_rate, bin_err = eval_action_agreement(model, eval_loader, device=device)
                    model.train()
                    logger.info(
                        f"== EVAL step {step:6d} | test_td {test_td:.6f} | test_conservative {test_cons:.6f} "
                        f"| action_match {match_rate:.4f} | bin_err {bin_err:.2f}"
                    )

                    if use_wandb:
                        wandb.log(
                            {
                                "step": step,
                                "eval/test_td_loss": float(test_td),
                                "eval/test_conservative_loss": float(test_cons),
                                "eval/action_match": float(match_rate),
                                "eval/action_bin_err": float(bin_err),
                            },
                            step=step,
                        )

                    # save best-by-td checkpoint
                    if test_td < best_test_td_loss:
                        best_test_td_loss = test_td
                        ckpt = {
                            "model_state": model.state_dict(),
                            "config": cfg.__dict__,
                            "model_config": asdict(model_cfg) if model_cfg is not None else None,
                            "best_test_td_loss": best_test_td_loss,
                        }
                        torch.save(ckpt, ckpt_path)
                        logger.info(f"   saved: {ckpt_path} (best_test_td_loss={best_test_td_loss:.6f})")
                        if use_wandb:
                            wandb.save(ckpt_path)

                if cfg.max_steps is not None and step >= cfg.max_steps:
                    stop = True
                    break

            if stop:
                break

        return {
            "best_test_td_loss": best_test_td_loss,
            "final_train_loss": last_loss,
            "steps": step,
        }

    finally:
        if use_wandb:
            wandb.finish()
