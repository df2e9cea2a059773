import pytest
import torch


@pytest.fixture(autouse=True)
def _seed():
    torch.manual_seed(0)


@pytest.fixture
def tiny_model_kwargs():
    return dict(
        obs_dim=11,
        num_actions=7,
        action_bins=256,
        dim=32,
        depth=2,
        heads=4,
        dim_head=8,
        num_mem_kv=2,
        state_hidden_dim=32,
    )
