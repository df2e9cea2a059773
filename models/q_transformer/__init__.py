from .model import QTransformer, QHeadMultipleActions, Transformer, TransformerAttention, DuelingHead, AdaptiveScale
from .attend import Attend
from .train import train_qtransformer, q_learning_loss, conservative_loss, eval_td_loss, eval_action_agreement
from .data import ReplayMemoryDataset, discretize_actions, undiscretize_actions, make_dataloader
from .config import ModelConfig, TrainConfig, set_seed, setup_logging
