"""
End-to-end tests of the training loop on tiny synthetic data (CPU).
"""
import threading

import pytest
import torch
import yaml

from core.callbacks import RESULTS_HEADER, Callback
from core.dataset import TensorDetectionDataset, synthetic_dataset
from core.trainer import EpochMetrics, Trainer
from tests.config import IMG_SIZE, NUM_CLASSES

def _cfg(tmp_path, **overrides):
    cfg = {
        "save_dir": str(tmp_path / "run"),
        "img_size": IMG_SIZE,
        "num_classes": NUM_CLASSES,
        "batch_size": 2,
        "nominal_batch": 2,
        "epochs": 2,
        "warmup_epochs": 0,
        "close_mosaic": 0,
        "device": "cpu",
        "log_level": "WARNING",
    }
    cfg.update(overrides)
    return cfg

def _val(n=2):
    return synthetic_dataset(n, img_size=IMG_SIZE, num_classes=NUM_CLASSES, seed=5)

def test_fit_writes_run_artifacts(tmp_path, mock_model_factory, tiny_dataset):
    history = []
    trainer = Trainer(
        mock_model_factory(), tiny_dataset, _val(), cfg=_cfg(tmp_path), observer=history.append
    )
    result = trainer.fit()

    assert result.epochs_completed == 2 and not result.cancelled
    assert [m.epoch for m in history] == [1, 2]
    assert all(isinstance(m, EpochMetrics) for m in history)
    assert all(m.box_loss > 0 and m.cls_loss > 0 for m in history)
    assert 1 <= result.best_epoch <= 2
    assert result.param_count == trainer.param_count > 0

    root = trainer.paths.root
    lines = (root / "results.csv").read_text().splitlines()
    assert lines[0] == RESULTS_HEADER and len(lines) == 3
    args = yaml.safe_load((root / "args.yaml").read_text())
    assert args["model"] == "yolov8n" and args["epochs"] == 2
    assert trainer.paths.best.exists() and trainer.paths.last.exists()

    ckpt = torch.load(trainer.paths.last, map_location="cpu", weights_only=False)
    assert ckpt["epoch"] == 2
    assert set(ckpt["model"]) == set(trainer.model.state_dict())
    assert ckpt["ema_updates"] == trainer.ema.updates > 0

def test_saved_weights_reload(tmp_path, mock_model_factory, tiny_dataset):
    trainer = Trainer(mock_model_factory(), tiny_dataset, None, cfg=_cfg(tmp_path, epochs=1))
    trainer.fit()
    fresh = Trainer(mock_model_factory(seed=9), tiny_dataset, None, cfg=_cfg(tmp_path / "b", epochs=1))
    ckpt = fresh.load_checkpoint(trainer.paths.last)
    for k, v in fresh.model.state_dict().items():
        assert torch.equal(v, ckpt["model"][k].to(v.device))

def test_cancellation_keeps_last_checkpoint(tmp_path, mock_model_factory, tiny_dataset):
    cancel = threading.Event()
    trainer = Trainer(
        mock_model_factory(),
        tiny_dataset,
        None,
        cfg=_cfg(tmp_path, epochs=3),
        observer=lambda m: cancel.set(),
        cancel_event=cancel,
    )
    result = trainer.fit()
    assert result.cancelled
    assert result.epochs_completed == 1
    assert trainer.paths.last.exists()

def test_exception_saves_last_and_reraises(tmp_path, mock_model_factory, tiny_dataset):
    class Broken(TensorDetectionDataset):
        def get_batches(self, batch_size, shuffle=True):
            raise RuntimeError("disk gone")
            yield

    broken = Broken(tiny_dataset.images, tiny_dataset.labels)
    trainer = Trainer(mock_model_factory(), broken, None, cfg=_cfg(tmp_path))
    with pytest.raises(RuntimeError, match="disk gone"):
        trainer.fit()
    assert trainer.paths.last.exists()

def test_early_stopping(tmp_path, mock_model_factory, tiny_dataset):
    trainer = Trainer(mock_model_factory(), tiny_dataset, _val(), cfg=_cfg(tmp_path, epochs=5, patience=1))
    trainer.validate = lambda dataset: (0.0, 0.0, {})
    result = trainer.fit()
    assert trainer.stop_training
    assert result.epochs_completed == 2
    assert result.best_epoch == 1

def test_close_mosaic_fires_once(tmp_path, mock_model_factory, tiny_dataset):
    trainer = Trainer(mock_model_factory(), tiny_dataset, None, cfg=_cfg(tmp_path, epochs=3, close_mosaic=2))
    trainer.fit()
    assert tiny_dataset.pipeline_changes == 1
    assert not tiny_dataset.use_mosaic

def test_unlabeled_val_set_falls_back_to_train(tmp_path, mock_model_factory, tiny_dataset):
    empty = TensorDetectionDataset(tiny_dataset.images[:2], [torch.zeros(0, 5)] * 2)
    trainer = Trainer(mock_model_factory(), tiny_dataset, empty, cfg=_cfg(tmp_path))
    assert trainer._resolve_val_dataset() is tiny_dataset

def test_validate_keeps_live_weights(tmp_path, mock_model_factory, tiny_dataset):
    trainer = Trainer(mock_model_factory(), tiny_dataset, None, cfg=_cfg(tmp_path, epochs=1))
    trainer.fit()
    before = {k: v.clone() for k, v in trainer.model.state_dict().items()}
    trainer.validate(_val())
    for k, v in trainer.model.state_dict().items():
        assert torch.equal(v, before[k]), k

def test_custom_callbacks_receive_events(tmp_path, mock_model_factory, tiny_dataset):
    class Recorder(Callback):
        def __init__(self):
            self.events = []

        def on_train_start(self, trainer):
            self.events.append("start")

        def on_epoch_end(self, trainer, epoch, metrics):
            self.events.append(f"epoch{epoch}")

        def on_train_end(self, trainer, result):
            self.events.append("end")

    rec = Recorder()
    Trainer(mock_model_factory(), tiny_dataset, None, cfg=_cfg(tmp_path), callbacks=[rec]).fit()
    assert rec.events == ["start", "epoch0", "epoch1", "end"]

def test_distillation_trains_student_only(tmp_path, mock_model_factory, tiny_dataset):
    teacher = mock_model_factory(seed=1)
    frozen = {k: v.clone() for k, v in teacher.state_dict().items()}
    history = []
    trainer = Trainer(
        mock_model_factory(),
        tiny_dataset,
        None,
        cfg=_cfg(tmp_path, epochs=1, distill_mode="both"),
        observer=history.append,
        teacher_model=teacher,
    )
    trainer.fit()
    assert trainer.distill_loss.mode == "both"
    assert history[0].distill_loss > 0
    for k, v in teacher.state_dict().items():
        assert torch.equal(v, frozen[k]), k
    assert any(g.get("name") == "distill" for g in trainer.optimizer.param_groups)
