"""Core training components for yolo-forge."""
from .base import BaseRunner
from .config import YOLOConfig, get_config
from .dataset import DetectionDataset, TensorDetectionDataset
from .trainer import EpochMetrics, TrainResult, Trainer
from .validator import Validator

__all__ = [
    'BaseRunner',
    'YOLOConfig',
    'get_config',
    'DetectionDataset',
    'TensorDetectionDataset',
    'EpochMetrics',
    'TrainResult',
    'Trainer',
    'Validator',
]
