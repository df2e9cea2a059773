import sys
from dataclasses import dataclass
from typing import Optional

import numpy as np
import torch
from loguru import logger


@dataclass
class ModelConfig:
    obs_dim: int = 11
    num_actions: int = 7
    action_bins: int = 256

    # transformer
    dim: int = 512
    depth: int = 2
    heads: int = 8
    dim_head: int = 64
    num_mem_kv: int = 4
    attn_dropout: float = 0.0
    ff_dropout: float = 0.0
    flash: bool = True
    cross_attend: bool = False

    # heads
    dueling: bool = True
    state_hidden_dim: int = 256


@dataclass
class TrainConfig:
    # data
    batch_size: int = 256
    action_low: float = -1.0
    action_high: float = 1.0

    # optimization
    lr: float = 3e-4
    weight_decay: float = 0.01
    grad_clip: float = 1.0

    # q-learning
    gamma: float = 0.99
    min_reward: float = 0.0
    conservative_weight: float = 1.0
    target_tau: float = 0.005

    # training
    train_epoch: int = 100
    max_steps: Optional[int] = None
    eval_every: int = 500
    eval_samples: int = 2048
    log_every: int = 50

    # system
    seed: int = 42
    device: str = "cuda" if torch.cuda.is_available() else "cpu"
    use_wandb: bool = True
    wandb_project: str = "q_transformer"
    ckpt_dir: str = "."


def set_seed(seed: int):
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    # call once at process start
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
               "<cyan>{name}</cyan> - <level>{message}</level>",
    )
    if log_file is not None:
        logger.add(log_file, level=level)
