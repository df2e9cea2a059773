"""
Offline transition data for Q-Transformer training.

Prepared payload (torch.save'd dict), one entry per split ("train", "test"):
  observations:      (N, obs_dim) float
  actions:           (N, num_actions) float in [low, high], or long bin indices
  rewards:           (N,) float
  next_observations: (N, obs_dim) float
  dones:             (N,) bool / float
"""

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset


TRANSITION_KEYS = ("observations", "actions", "rewards", "next_observations", "dones")


def discretize_actions(actions, action_bins, low=-1.0, high=1.0):
    """ continuous (.., A) in [low, high] -> long bin indices in [0, action_bins) """
    scaled = (actions.float().clamp(low, high) - low) / (high - low)
    return (scaled * (action_bins - 1)).round().long()


def undiscretize_actions(bins, action_bins, low=-1.0, high=1.0):
    """ bin indices -> bin centres in [low, high] """
    return low + bins.float() / (action_bins - 1) * (high - low)


class ReplayMemoryDataset(Dataset):
    """
    Yields (state, action_bins, reward, next_state, done):
      state, next_state: (obs_dim,) float32
      action_bins:       (num_actions,) long
      reward, done:      () float32
    """
    def __init__(self, observations, actions, rewards, next_observations, dones,
                 action_bins=256, action_low=-1.0, action_high=1.0):
        n = observations.shape[0]
        assert actions.shape[0] == rewards.shape[0] == next_observations.shape[0] == dones.shape[0] == n, \
            "all transition tensors need the same leading dim"
        assert observations.shape == next_observations.shape

        if torch.is_floating_point(actions):
            actions = discretize_actions(actions, action_bins, action_low, action_high)
        actions = actions.long()
        assert actions.min() >= 0 and actions.max() < action_bins, "action bin out of range"

        self.observations = observations.float()
        self.actions = actions
        self.rewards = rewards.float().reshape(n)
        self.next_observations = next_observations.float()
        self.dones = dones.float().reshape(n)
        self.action_bins = action_bins

    @classmethod
    def from_payload(cls, split, **kwargs):
        missing = [k for k in TRANSITION_KEYS if k not in split]
        if missing:
            raise ValueError(f"transition payload is missing keys: {missing}")
        return cls(*(torch.as_tensor(split[k]) for k in TRANSITION_KEYS), **kwargs)

    @classmethod
    def from_file(cls, path, split="train", **kwargs):
        payload = torch.load(path, map_location="cpu")
        return cls.from_payload(payload[split], **kwargs)

    @property
    def obs_dim(self):
        return self.observations.shape[1]

    @property
    def num_actions(self):
        return self.actions.shape[1]

    def __len__(self):
        return self.observations.shape[0]

    def __getitem__(self, idx):
        return (
            self.observations[idx],
            self.actions[idx],
            self.rewards[idx],
            self.next_observations[idx],
            self.dones[idx],
        )


def make_dataloader(dataset, batch_size, shuffle=True, seed=None, drop_last=False):
    generator = None
    if seed is not None:
        generator = torch.Generator().manual_seed(seed)
    return DataLoader(dataset, batch_size=batch_size, shuffle=shuffle,
                      generator=generator, drop_last=drop_last)


def make_fixed_eval_subset(dataset, num_samples=1024, seed=0):
    """ fixed random subset of a split, so eval numbers are comparable across steps """
    rng = np.random.default_rng(seed)
    idxs = rng.choice(len(dataset), size=min(num_samples, len(dataset)), replace=False)
    return torch.utils.data.Subset(dataset, idxs.tolist())
