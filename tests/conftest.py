"""
Pytest configuration and shared fixtures.

- Keep TensorBoard and console output out of test runs
- Provide common fixtures: model, loss_fn, dummy_input, dummy_targets, tiny datasets
"""
import os

import pytest
import torch

from tests.config import DEVICE, IMG_SIZE, NUM_CLASSES, REG_MAX, TEST_LOG_DIR

def pytest_sessionstart(session):
    os.environ["YOLO_TENSORBOARD"] = "0"
    from utils.logging import get_logger
    get_logger(log_dir=TEST_LOG_DIR, console=False)

@pytest.fixture(scope="module")
def mock_model_factory():
    """Factory for a small v8 network on the test device."""
    from models.registry import create_model

    def _create(nc=NUM_CLASSES, variant="n", reg_max=REG_MAX, device=DEVICE, seed=0):
        torch.manual_seed(seed)
        return create_model("v8", nc, variant, device=device, reg_max=reg_max)

    return _create

@pytest.fixture(scope="module")
def model(mock_model_factory):
    return mock_model_factory()

@pytest.fixture(scope="module")
def loss_fn(model):
    from utils.loss import DetectionLoss
    return DetectionLoss(model, {"num_classes": NUM_CLASSES, "img_size": IMG_SIZE})

@pytest.fixture(scope="module")
def dummy_input():
    torch.manual_seed(0)
    return torch.rand(2, 3, IMG_SIZE, IMG_SIZE, device=DEVICE)

@pytest.fixture(scope="module")
def dummy_targets():
    """GT tables for a batch of two: image 0 has two boxes, image 1 none."""
    gt_boxes = torch.zeros(2, 2, 4, device=DEVICE)
    gt_boxes[0, 0] = torch.tensor([0.1, 0.1, 0.6, 0.6])
    gt_boxes[0, 1] = torch.tensor([0.5, 0.4, 0.9, 0.95])
    gt_labels = torch.zeros(2, 2, 1, dtype=torch.long, device=DEVICE)
    gt_labels[0, 1, 0] = 2
    gt_mask = torch.zeros(2, 2, 1, device=DEVICE)
    gt_mask[0] = 1.0
    return gt_boxes, gt_labels, gt_mask

@pytest.fixture
def tiny_dataset():
    from core.dataset import synthetic_dataset
    return synthetic_dataset(4, img_size=IMG_SIZE, num_classes=NUM_CLASSES, seed=0)
