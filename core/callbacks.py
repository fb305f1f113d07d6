"""
core/callbacks.py

Callback/Hook system for the training loop: console/TensorBoard logging,
the results.csv table and the per-epoch observer bridge.
"""
from abc import ABC
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import torch

RESULTS_HEADER = "epoch,box_loss,cls_loss,dfl_loss,mAP50,mAP50-95,fitness,lr"

class Callback(ABC):
    """Base callback class for training hooks."""
    def on_train_start(self, trainer):
        """Called at the beginning of training."""

    def on_train_end(self, trainer, result):
        """Called once with the final TrainResult (also after cancel)."""

    def on_epoch_start(self, trainer, epoch: int):
        """Called at the beginning of each epoch."""

    def on_epoch_end(self, trainer, epoch: int, metrics):
        """Called at the end of each epoch with an EpochMetrics record."""

    def on_batch_end(
        self,
        trainer,
        batch_idx: int,
        loss: torch.Tensor,
        loss_items: Optional[Dict[str, float]] = None
    ):
        """Called after processing each batch."""

    def on_val_end(self, trainer, metrics: Dict[str, float]):
        """Called after validation."""

class LoggingCallback(Callback):
    """Handles logging during training."""
    def __init__(self, log_interval: int = 10):
        self.log_interval = max(1, int(log_interval))
        self.history: List[Any] = []

    def on_train_start(self, trainer):
        self.history = []
        trainer.logger.info(
            "train/start",
            {
                "model": f"yolo{trainer.config['model_version']}{trainer.config['variant']}",
                "parameters": trainer.param_count,
                "epochs": trainer.epochs,
                "batch_size": trainer.batch_size,
                "accumulate": trainer.accumulate,
                "device": str(trainer.device),
                "distill": trainer.distill_loss.mode if trainer.distill_loss is not None else None,
            },
        )

    def on_batch_end(self, trainer, batch_idx, loss, loss_items: Optional[Dict[str, float]] = None):
        if batch_idx % self.log_interval:
            return
        step = trainer.state.global_step
        trainer.logger.basic("loss/total", float(loss.detach().item()), step=step)
        for k, v in (loss_items or {}).items():
            trainer.logger.basic(f"loss/{k}", float(v), step=step)

    def on_val_end(self, trainer, metrics):
        parts = ", ".join(f"{k}:{v:.4f}" for k, v in metrics.items())
        trainer.logger.info("val/summary", metrics, console_msg=parts)

    def on_epoch_end(self, trainer, epoch, metrics):
        self.history.append(metrics)
        step = trainer.state.global_step
        trainer.logger.log_metrics(
            {"mAP50": metrics.map50, "mAP50-95": metrics.map5095, "fitness": metrics.fitness},
            step=step
        )
        trainer.logger.basic("train/lr", metrics.lr, step=step)
        trainer.logger.log_lr(trainer.optimizer, step=step)

        line = (
            f"{metrics.epoch:>5}/{metrics.total_epochs:<3} "
            f"box {metrics.box_loss:.4f} cls {metrics.cls_loss:.4f} dfl {metrics.dfl_loss:.4f} "
        )
        if trainer.distill_loss is not None:
            line += f"distill {metrics.distill_loss:.4f} "
        line += (
            f"mAP50 {metrics.map50:.4f} mAP50-95 {metrics.map5095:.4f} "
            f"fitness {metrics.fitness:.4f}"
        )
        if metrics.is_best:
            line += " *"
        trainer.logger.info("train/epoch", metrics.as_dict(), console_msg=line)

    def on_train_end(self, trainer, result):
        for ap_cls, ap50 in sorted(result.per_class_ap50.items()):
            trainer.logger.info(f"val/ap50/class_{ap_cls}", round(ap50, 4))
        trainer.logger.info(
            "train/summary",
            {
                "model": f"yolo{result.model_version}{result.model_variant}",
                "parameters": result.param_count,
                "best_epoch": result.best_epoch,
                "best_fitness": round(result.best_fitness, 4),
                "best_mAP50": round(result.best_map50, 4),
                "best_mAP50-95": round(result.best_map5095, 4),
                "epochs": result.epochs_completed,
                "time_s": round(result.training_time, 1),
                "cancelled": result.cancelled,
                "save_dir": str(result.save_dir),
            },
        )
        if self.history:
            rows = ["epoch    box      cls      dfl      mAP50    mAP50-95 fitness"]
            for m in self.history:
                rows.append(
                    f"{m.epoch:<8} {m.box_loss:<8.4f} {m.cls_loss:<8.4f} {m.dfl_loss:<8.4f} "
                    f"{m.map50:<8.4f} {m.map5095:<8.4f} {m.fitness:.4f}{' *' if m.is_best else ''}"
                )
            table = "\n".join(rows)
            trainer.logger.info("train/history", table, console_msg="\n" + table)
            trainer.logger.log_text("train/history", table)

class ResultsCSVCallback(Callback):
    """Appends one row per epoch to results.csv."""
    def __init__(self, path: Path):
        self.path = Path(path)

    def on_train_start(self, trainer):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(RESULTS_HEADER + "\n")

    def on_epoch_end(self, trainer, epoch, metrics):
        row = (
            f"{metrics.epoch},{metrics.box_loss:.6f},{metrics.cls_loss:.6f},{metrics.dfl_loss:.6f},"
            f"{metrics.map50:.6f},{metrics.map5095:.6f},{metrics.fitness:.6f},{metrics.lr:.8f}"
        )
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(row + "\n")

class ObserverCallback(Callback):
    """Forwards each EpochMetrics record to a user-supplied function."""
    def __init__(self, observer: Callable[[Any], None]):
        self.observer = observer

    def on_epoch_end(self, trainer, epoch, metrics):
        self.observer(metrics)

class CallbackManager:
    """Manages multiple callbacks during training."""
    def __init__(self, callbacks: Optional[List[Callback]] = None):
        self.callbacks = list(callbacks or [])

    def add_callback(self, callback: Callback):
        """Add a callback to the manager."""
        self.callbacks.append(callback)

    def fire(self, event: str, trainer, *args, **kwargs):
        """Fire an event to all callbacks; a failing callback is logged, not raised."""
        for callback in self.callbacks:
            method = getattr(callback, event, None)
            if method is None:
                continue
            try:
                method(trainer, *args, **kwargs)
            except Exception as e:
                trainer.logger.error(
                    "callbacks/error", f"{callback.__class__.__name__}.{event}: {e!r}"
                )

    def on_train_start(self, trainer):
        self.fire("on_train_start", trainer)

    def on_train_end(self, trainer, result):
        self.fire("on_train_end", trainer, result)

    def on_epoch_start(self, trainer, epoch):
        self.fire("on_epoch_start", trainer, epoch)

    def on_epoch_end(self, trainer, epoch, metrics):
        self.fire("on_epoch_end", trainer, epoch, metrics)

    def on_batch_end(self, trainer, batch_idx, loss, loss_items: Optional[Dict[str, float]] = None):
        self.fire("on_batch_end", trainer, batch_idx, loss, loss_items)

    def on_val_end(self, trainer, metrics):
        self.fire("on_val_end", trainer, metrics)
