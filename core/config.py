"""
core/config.py

Centralized configuration for hyperparameters to ensure consistency.
"""
from typing import Dict, Any, Optional, Union
from pathlib import Path
from utils.distill import DISTILL_MODES
from utils.helpers import load_yaml
import copy

OPTIMIZERS = ("auto", "SGD", "Adam", "AdamW")

def _deep_update(dst: dict, src: dict) -> dict:
    """Recursively update mapping dst with src (in-place) and return dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst

class YOLOConfig:
    """Central configuration management for YOLO training."""

    DEFAULTS = {
        # === Model ===
        "model_version": "v8",  # Registry key of the network family
        "variant": "n",  # Width/depth scale: n/s/m/l/x
        "num_classes": 80,  # Number of classes
        "img_size": 640,  # Square training/validation resolution
        "reg_max": 16,  # DFL bins per box side (max distance = reg_max - 1)

        # === Schedule ===
        "epochs": 100,  # Total training epochs
        "batch_size": 16,  # Mini-batch size
        "nominal_batch": 64,  # Batch size the LR/decay are tuned for
        "patience": 100,  # Epochs without improvement before early stop
        "close_mosaic": 10,  # Disable mosaic for the last N epochs (0 = never)
        "seed": 0,  # Python/numpy/torch seed

        # === Optimizer ===
        "optimizer": "auto",  # auto | SGD | Adam | AdamW
        "lr0": 0.01,  # Initial learning rate
        "lrf": 0.01,  # Final LR as a fraction of lr0
        "momentum": 0.937,  # SGD momentum / Adam beta1
        "weight_decay": 0.0005,  # Decay for conv/linear weights (scaled by batch)
        "warmup_epochs": 3.0,  # Warmup length in epochs (fractional ok)
        "warmup_bias_lr": 0.1,  # Starting LR of the bias group during warmup
        "warmup_momentum": 0.8,  # Starting momentum during warmup
        "cos_lr": False,  # Cosine instead of linear LR decay
        "max_grad_norm": 10.0,  # Gradient clipping max-norm

        # === EMA ===
        "use_ema": True,  # Enable EMA tracking of weights
        "ema_decay": 0.9999,  # Target EMA decay
        "ema_tau": 2000,  # EMA ramp time constant (updates)

        # === Loss & assignment ===
        "box_gain": 7.5,  # CIoU loss gain
        "cls_gain": 0.5,  # BCE loss gain
        "dfl_gain": 1.5,  # DFL loss gain
        "assign_topk": 10,  # TaskAligned top-k per GT
        "assign_alpha": 0.5,  # TaskAligned exponent on class prob
        "assign_beta": 6.0,  # TaskAligned exponent on IoU

        # === Validation ===
        "conf_thresh": 0.001,  # Minimum confidence fed to the mAP accumulator
        "val_batch_size": None,  # Defaults to 2x batch_size

        # === Distillation (training-only) ===
        "teacher_weights": None,  # .pt archive for the teacher network; None disables
        "teacher_variant": "l",  # Teacher width/depth scale
        "distill_weight": 1.0,  # Weight of the distillation term
        "distill_temperature": 20.0,  # Softmax temperature for logit distillation
        "distill_mode": "logit",  # logit | feature | both

        # === Runtime ===
        "device": None,  # cuda / cpu / None (auto)
        "save_dir": "runs/train",  # Run directory root
        "log_level": "INFO",  # Console level: DEBUG/INFO/WARNING/ERROR/BASIC/HEAVY
    }

    def __init__(self, hyp: Optional[Dict[str, Any]] = None, hyp_path: Optional[Path] = None):
        """
        Initialize configuration with optional hyperparameters.

        Args:
            hyp: Dictionary of hyperparameters (highest priority)
            hyp_path: Path to YAML file with hyperparameters
        """
        self.hyp = copy.deepcopy(self.DEFAULTS)

        if hyp_path is not None:
            file_hyp = load_yaml(Path(hyp_path))
            _deep_update(self.hyp, file_hyp)

        if hyp is not None:
            _deep_update(self.hyp, hyp)

    def __getitem__(self, key: str) -> Any:
        return self.hyp[key]

    def get(self, key: str, default: Any = None) -> Any:
        """Get a hyperparameter value."""
        return self.hyp.get(key, default)

    def update(self, updates: Dict[str, Any]):
        """Update hyperparameters with deep-merge semantics for nested dicts."""
        _deep_update(self.hyp, updates)

    def validate(self) -> "YOLOConfig":
        """Normalize enumerated options; raise ValueError on anything unknown."""
        opt = str(self.hyp["optimizer"])
        names = {o.lower(): o for o in OPTIMIZERS}
        if opt.lower() not in names:
            raise ValueError(f"optimizer must be one of {OPTIMIZERS}, got {opt!r}")
        self.hyp["optimizer"] = names[opt.lower()]

        mode = str(self.hyp["distill_mode"]).lower()
        if mode not in DISTILL_MODES:
            raise ValueError(f"distill_mode must be one of {DISTILL_MODES}, got {mode!r}")
        self.hyp["distill_mode"] = mode

        for key in ("epochs", "batch_size", "nominal_batch", "num_classes", "img_size"):
            if int(self.hyp[key]) <= 0:
                raise ValueError(f"{key} must be positive, got {self.hyp[key]!r}")
        if int(self.hyp["reg_max"]) < 2:
            raise ValueError(f"reg_max must be >= 2, got {self.hyp['reg_max']!r}")
        return self

    @property
    def loss_gains(self) -> Dict[str, float]:
        """Get loss gains."""
        return {
            "box": float(self.hyp["box_gain"]),
            "cls": float(self.hyp["cls_gain"]),
            "dfl": float(self.hyp["dfl_gain"]),
        }

    @property
    def ema_config(self) -> Dict[str, Any]:
        """Get EMA configuration."""
        return {
            "enabled": bool(self.hyp["use_ema"]),
            "decay": float(self.hyp["ema_decay"]),
            "tau": float(self.hyp["ema_tau"]),
        }

    @property
    def assigner_config(self) -> Dict[str, Any]:
        return {
            "topk": int(self.hyp["assign_topk"]),
            "alpha": float(self.hyp["assign_alpha"]),
            "beta": float(self.hyp["assign_beta"]),
        }

    @property
    def distill_config(self) -> Dict[str, Any]:
        return {
            "teacher_weights": self.hyp["teacher_weights"],
            "teacher_variant": self.hyp["teacher_variant"],
            "weight": float(self.hyp["distill_weight"]),
            "temperature": float(self.hyp["distill_temperature"]),
            "mode": str(self.hyp["distill_mode"]).lower(),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return self.hyp.copy()

def get_config(
    cfg: Union[YOLOConfig, Dict[str, Any], None] = None,
    hyp: Optional[Dict[str, Any]] = None,
    hyp_path: Optional[Path] = None
) -> YOLOConfig:
    """
    Create a YOLOConfig instance from various sources.

    Priority order:
    1. hyp dict (highest)
    2. hyp_path file
    3. cfg overrides (a cfg['hyp'] dict or YAML path is applied first)
    4. DEFAULTS (base)
    """
    if isinstance(cfg, YOLOConfig):
        config = YOLOConfig(hyp=cfg.to_dict())
    else:
        config = YOLOConfig()
        if cfg:
            cfg = dict(cfg)
            nested = cfg.pop('hyp', None)
            if isinstance(nested, dict):
                config.update(nested)
            elif isinstance(nested, (str, Path)):
                config.update(load_yaml(Path(nested)))
            config.update(cfg)

    if hyp_path:
        file_hyp = load_yaml(Path(hyp_path))
        config.update(file_hyp)

    if hyp:
        config.update(hyp)

    return config.validate()
