import argparse
from dataclasses import asdict

import torch

from models.q_transformer import (
    ModelConfig,
    QTransformer,
    ReplayMemoryDataset,
    TrainConfig,
    setup_logging,
    train_qtransformer,
)


PREPARED_PATH = "data/prepared_transitions.pt"


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--data", type=str, default=PREPARED_PATH)
    parser.add_argument("--seed", "-s", type=int, default=42)
    parser.add_argument("--max-steps", type=int, default=None)
    parser.add_argument("--no-wandb", action="store_true")
    args = parser.parse_args()

    setup_logging()

    payload = torch.load(args.data, map_location="cpu")

    cfg = TrainConfig(
        seed=args.seed,
        max_steps=args.max_steps,
        use_wandb=not args.no_wandb,
    )
    dataset_kwargs = dict(action_low=cfg.action_low, action_high=cfg.action_high)

    model_cfg = ModelConfig(
        obs_dim=payload["train"]["observations"].shape[1],
        num_actions=payload["train"]["actions"].shape[1],
    )

    train_ds = ReplayMemoryDataset.from_payload(payload["train"], action_bins=model_cfg.action_bins, **dataset_kwargs)
    test_ds = ReplayMemoryDataset.from_payload(payload["test"], action_bins=model_cfg.action_bins, **dataset_kwargs)

    # sanity checks (optional but useful)
    assert len(train_ds) > 0 and len(test_ds) > 0
    assert test_ds.obs_dim == train_ds.obs_dim and test_ds.num_actions == train_ds.num_actions

    model = QTransformer(**asdict(model_cfg)).to(cfg.device)

    print("cfg.device =", cfg.device)
    print("model device =", model.device)

    stats = train_qtransformer(model, train_ds, test_ds, cfg, model_cfg=model_cfg)
    print("done:", stats)


if __name__ == "__main__":
    main()
