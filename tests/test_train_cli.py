"""
Smoke test of the training entry point.
"""
import pytest

import train

def test_parse_overrides():
    out = train._parse_overrides("lr0:0.02,epochs:3,cos_lr:true,teacher_weights:none,optimizer:SGD")
    assert out == {"lr0": 0.02, "epochs": 3, "cos_lr": True, "teacher_weights": None, "optimizer": "SGD"}

def test_requires_a_dataset(tmp_path):
    with pytest.raises(SystemExit):
        train.main(["--save-dir", str(tmp_path), "--log-level", "WARNING"])

def test_synthetic_run(tmp_path):
    result = train.main([
        "--synthetic", "4",
        "--num-classes", "2",
        "--img-size", "64",
        "--batch-size", "2",
        "--epochs", "1",
        "--device", "cpu",
        "--save-dir", str(tmp_path),
        "--log-level", "WARNING",
        "--hypo", "nominal_batch:2,warmup_epochs:0",
    ])
    assert result.epochs_completed == 1
    assert (tmp_path / "exp" / "weights" / "last.pt").exists()
    assert (tmp_path / "exp" / "results.csv").exists()
