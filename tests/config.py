"""
Central configuration for the test suite.
"""
import torch

DEVICE = torch.device('cuda' if torch.cuda.is_available() else 'cpu')

NUM_CLASSES = 3
REG_MAX = 16  # head bins; the loss works with R = REG_MAX - 1

IMG_SIZE = 64

TEST_LOG_DIR = 'runs/tests'
