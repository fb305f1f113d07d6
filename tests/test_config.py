"""
Tests for the hyperparameter configuration.
"""
import pytest
import yaml

from core.config import YOLOConfig, get_config

def test_defaults():
    cfg = get_config()
    assert cfg["optimizer"] == "auto"
    assert cfg.loss_gains == {"box": 7.5, "cls": 0.5, "dfl": 1.5}
    assert cfg.assigner_config == {"topk": 10, "alpha": 0.5, "beta": 6.0}
    assert cfg.ema_config["decay"] == 0.9999 and cfg.ema_config["tau"] == 2000

def test_priority_order(tmp_path):
    path = tmp_path / "hyp.yaml"
    path.write_text(yaml.safe_dump({"lr0": 0.02, "epochs": 7}))
    cfg = get_config(cfg={"lr0": 0.5, "batch_size": 4}, hyp_path=path, hyp={"epochs": 9})
    assert cfg["lr0"] == 0.02
    assert cfg["epochs"] == 9
    assert cfg["batch_size"] == 4

def test_nested_hyp_key_in_cfg():
    cfg = get_config(cfg={"hyp": {"cls_gain": 1.0}})
    assert cfg.loss_gains["cls"] == 1.0

def test_optimizer_name_is_normalized():
    assert get_config(hyp={"optimizer": "adamw"})["optimizer"] == "AdamW"
    with pytest.raises(ValueError):
        get_config(hyp={"optimizer": "rmsprop"})

def test_invalid_values_raise():
    with pytest.raises(ValueError):
        get_config(hyp={"distill_mode": "attention"})
    with pytest.raises(ValueError):
        get_config(hyp={"epochs": 0})
    with pytest.raises(ValueError):
        get_config(hyp={"reg_max": 1})

def test_copy_does_not_share_defaults():
    cfg = YOLOConfig(hyp={"epochs": 3})
    cfg.update({"epochs": 4})
    assert YOLOConfig.DEFAULTS["epochs"] == 100
    assert get_config(cfg)["epochs"] == 4
