from dataclasses import asdict, dataclass, field
from pathlib import Path
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional
import math
import threading

import torch
import torch.nn as nn
from tqdm import tqdm

from .base import BaseRunner
from .callbacks import (
    Callback,
    CallbackManager,
    LoggingCallback,
    ObserverCallback,
    ResultsCSVCallback,
)
from .config import get_config
from .validator import Validator
from models.registry import create_loss, create_model
from utils.distill import DistillationLoss, freeze_teacher
from utils.ema import ModelEMA, de_parallel, restore_state, snapshot_state
from utils.helpers import count_parameters, save_yaml, set_seed
from utils.logging import get_logger, set_log_level
from utils.metrics import fitness as compute_fitness
from utils.optimizer import WarmupScheduler, build_optimizer, print_optimizer_info
from utils.paths import RunPaths
from utils.weight_loader import load_weights

@dataclass
class EpochMetrics:
    """One row of training history, handed to the observer after every epoch."""
    epoch: int
    total_epochs: int
    box_loss: float
    cls_loss: float
    dfl_loss: float
    distill_loss: float
    map50: float
    map5095: float
    fitness: float
    lr: float
    is_best: bool

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)

@dataclass
class TrainResult:
    model_version: str
    model_variant: str
    param_count: int
    best_epoch: int
    best_fitness: float
    best_map50: float
    best_map5095: float
    training_time: float  # seconds
    per_class_ap50: Dict[int, float] = field(default_factory=dict)
    epochs_completed: int = 0
    cancelled: bool = False
    save_dir: Optional[Path] = None

class Trainer(BaseRunner):
    """
    Detection trainer:
      - per-iteration warmup + linear/cosine LR schedule
      - grad accumulation to the nominal batch + max-norm clipping
      - EMA weights for validation and checkpoints
      - optional knowledge distillation from a frozen teacher
      - early stopping on fitness (or on training loss without a val set)
      - cooperative cancellation through a threading.Event
    """
    def __init__(
        self,
        model: nn.Module,
        train_dataset,
        val_dataset=None,
        cfg=None,
        device=None,
        observer: Optional[Callable[[EpochMetrics], None]] = None,
        cancel_event: Optional[threading.Event] = None,
        teacher_model: Optional[nn.Module] = None,
        callbacks: Optional[List[Callback]] = None,
        close_mosaic_pipeline=None,
    ):
        self.config = get_config(cfg=cfg)
        self.paths = RunPaths(Path(self.config["save_dir"])).create()
        get_logger(log_dir=self.paths.root, level=self.config["log_level"])
        set_log_level(self.config["log_level"])
        super().__init__(
            model,
            device=device if device is not None else self.config["device"],
            cfg=self.config.to_dict()
        )
        set_seed(int(self.config["seed"]))

        self.train_dataset = train_dataset
        self.val_dataset = val_dataset
        self.cancel_event = cancel_event or threading.Event()
        self.close_mosaic_pipeline = (
            close_mosaic_pipeline if close_mosaic_pipeline is not None else
            getattr(train_dataset, "pipeline", None)
        )
        self.mosaic_closed = False
        self.stop_training = False

        self.epochs = int(self.config["epochs"])
        self.batch_size = int(self.config["batch_size"])
        self.img_size = int(self.config["img_size"])
        self.accumulate = max(round(self.config["nominal_batch"] / self.batch_size), 1)
        self.batches_per_epoch = max(1, math.ceil(train_dataset.count / self.batch_size))
        self.param_count = count_parameters(self.model)

        self.criterion = create_loss(self.config["model_version"], self.model, self.config)

        # Distillation (teacher is never stepped)
        self.teacher = teacher_model
        self.distill_loss: Optional[DistillationLoss] = None
        dcfg = self.config.distill_config
        if self.teacher is None and dcfg["teacher_weights"]:
            self.teacher = create_model(
                self.config["model_version"],
                int(getattr(model, "nc", self.config["num_classes"])),
                dcfg["teacher_variant"],
                reg_max=int(getattr(model, "reg_max", self.config["reg_max"])),
            )
            load_weights(self.teacher, dcfg["teacher_weights"])
        if self.teacher is not None:
            self.teacher = freeze_teacher(self.teacher.to(self.device))
            self.distill_loss = DistillationLoss(
                temperature=dcfg["temperature"],
                mode=dcfg["mode"],
                student_channels=getattr(de_parallel(self.model), "feature_channels", None),
                teacher_channels=getattr(de_parallel(self.teacher), "feature_channels", None),
            ).to(self.device)
        self.distill_weight = dcfg["weight"]

        self.optimizer = build_optimizer(
            self.model,
            name=self.config["optimizer"],
            lr0=self.config["lr0"],
            momentum=self.config["momentum"],
            weight_decay=self.config["weight_decay"],
            batch_size=self.batch_size,
            accumulate=self.accumulate,
            nominal_batch=int(self.config["nominal_batch"]),
            num_classes=int(getattr(model, "nc", self.config["num_classes"])),
            total_iterations=self.batches_per_epoch * self.epochs,
        )
        if self.distill_loss is not None and self.distill_loss.adapters is not None:
            base = self.optimizer.param_groups[0]
            self.optimizer.add_param_group({
                "params": list(self.distill_loss.parameters()),
                "weight_decay": 0.0,
                "name": "distill",
                "initial_lr": base["initial_lr"],
                "initial_momentum": base["initial_momentum"],
            })
        self.scheduler = WarmupScheduler(
            self.optimizer,
            epochs=self.epochs,
            batches_per_epoch=self.batches_per_epoch,
            lrf=self.config["lrf"],
            cos_lr=self.config["cos_lr"],
            warmup_epochs=self.config["warmup_epochs"],
            warmup_bias_lr=self.config["warmup_bias_lr"],
            warmup_momentum=self.config["warmup_momentum"],
            momentum=self.optimizer.param_groups[0]["initial_momentum"],
        )
        print_optimizer_info(self.optimizer, self.scheduler)

        ema_cfg = self.config.ema_config
        self.ema = ModelEMA(self.model, decay=ema_cfg["decay"], tau=ema_cfg["tau"])
        self.ema.enabled = ema_cfg["enabled"]

        self.validator = Validator(self.model, device=self.device, cfg=self.cfg)

        self.callbacks = CallbackManager([
            LoggingCallback(),
            ResultsCSVCallback(self.paths.results),
        ])
        if observer is not None:
            self.callbacks.add_callback(ObserverCallback(observer))
        for cb in callbacks or []:
            self.callbacks.add_callback(cb)

    # ------------------------------------------------------------ helpers
    def _model_state(self) -> Dict[str, torch.Tensor]:
        """EMA-substituted weights when EMA is on, else the live weights."""
        if self.ema.enabled:
            return self.ema.state_dict()
        return de_parallel(self.model).state_dict()

    def _save(self, path: Path, epoch: int):
        self.save_checkpoint(
            path,
            model_state=self._model_state(),
            optimizer=self.optimizer,
            ema=self.ema,
            epoch=epoch,
            best_fitness=self.state.best_fitness,
        )

    def _write_args(self):
        model = de_parallel(self.model)
        args = {
            "model": f"yolo{self.config['model_version']}{getattr(model, 'variant', self.config['variant'])}",
            "parameters": self.param_count,
        }
        for k, v in self.config.to_dict().items():
            args[k] = str(v) if isinstance(v, Path) else v
        save_yaml(self.paths.args, args)

    def _resolve_val_dataset(self):
        if self.val_dataset is None:
            return None
        total, _ = self.val_dataset.get_label_stats()
        if total == 0:
            self.logger.warning(
                "val/no_labels", "validation set has no labels; validating on the training set"
            )
            return self.train_dataset
        return self.val_dataset

    def _maybe_close_mosaic(self, epoch: int):
        close = int(self.config["close_mosaic"])
        if close > 0 and not self.mosaic_closed and epoch >= self.epochs - close:
            self.logger.info("train/close_mosaic", f"closing mosaic augmentation at epoch {epoch + 1}")
            self.train_dataset.set_pipeline(self.close_mosaic_pipeline, use_mosaic=False)
            self.mosaic_closed = True

    def validate(self, dataset):
        """mAP of the EMA weights; the live weights are restored afterwards."""
        if not self.ema.enabled:
            return self.validator.validate(dataset)
        saved = snapshot_state(self.model)
        try:
            self.ema.apply_to(self.model)
            return self.validator.validate(dataset)
        finally:
            restore_state(self.model, saved)

    def _forward_loss(self, images, gt_boxes, gt_labels, gt_mask):
        use_feats = self.distill_loss is not None and self.distill_loss.use_features
        s_feats = t_feats = None
        if use_feats:
            raw_box, raw_cls, sizes, s_feats = self.model.forward_train_with_features(images)
        else:
            raw_box, raw_cls, sizes = self.model.forward_train(images)
        loss, loss_items = self.criterion(
            raw_box, raw_cls, sizes, gt_labels, gt_boxes, gt_mask, self.img_size
        )
        distill_item = None
        if self.distill_loss is not None:
            with torch.no_grad():
                if use_feats:
                    t_box, t_cls, _, t_feats = self.teacher.forward_train_with_features(images)
                else:
                    t_box, t_cls, _ = self.teacher.forward_train(images)
            d_loss, distill_item = self.distill_loss(raw_box, raw_cls, t_box, t_cls, s_feats, t_feats)
            loss = loss + d_loss * self.distill_weight
        return loss, loss_items, distill_item

    def _optimizer_step(self):
        torch.nn.utils.clip_grad_norm_(self.model.parameters(), max_norm=self.config["max_grad_norm"])
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)
        self.ema.update(self.model)
        self.state.opt_step += 1
        self.state.last_opt_step = self.state.global_step

    # -------------------------------------------------------------- loop
    def train_epoch(self, epoch: int) -> Dict[str, float]:
        """One pass over the training set; returns mean loss components."""
        self.model.train()
        sums = {"box": 0.0, "cls": 0.0, "dfl": 0.0, "distill": 0.0}
        count = 0
        pbar = tqdm(
            self.train_dataset.get_batches(self.batch_size, shuffle=True),
            total=self.batches_per_epoch,
            desc=f"{epoch + 1}/{self.epochs}"
        )
        try:
            for i, batch in enumerate(pbar):
                if self.cancel_event.is_set():
                    break
                images, gt_boxes, gt_labels, gt_mask = self.preprocess(batch)
                step = self.state.global_step
                self.scheduler.step(epoch, step)

                loss, loss_items, distill_item = self._forward_loss(
                    images, gt_boxes, gt_labels, gt_mask
                )
                if not torch.isfinite(loss):
                    self.logger.warning(
                        "train/nonfinite_loss", f"skipping batch {i} at iteration {step}: loss={loss.item()}"
                    )
                    self.state.global_step += 1
                    continue
                loss.backward()

                if self.state.global_step - self.state.last_opt_step >= self.accumulate:
                    self._optimizer_step()

                items = {
                    "box": float(loss_items[0]),
                    "cls": float(loss_items[1]),
                    "dfl": float(loss_items[2]),
                }
                if distill_item is not None:
                    items["distill"] = float(distill_item)
                for k, v in items.items():
                    sums[k] += v
                count += 1

                self.logger.set_step(step)
                self.callbacks.on_batch_end(self, i, loss, items)
                pbar.set_postfix({k: f"{sums[k] / count:.4f}" for k in items})
                self.state.global_step += 1
        finally:
            pbar.close()
        return {k: v / max(count, 1) for k, v in sums.items()}

    def fit(self) -> TrainResult:
        val_dataset = self._resolve_val_dataset()
        self._write_args()
        self.callbacks.on_train_start(self)

        t0 = perf_counter()
        best_loss = float("inf")
        best_map50 = best_map5095 = 0.0
        best_per_class: Dict[int, float] = {}
        epochs_completed = 0
        cancelled = False
        epoch = 0
        try:
            for epoch in range(self.epochs):
                if self.cancel_event.is_set():
                    cancelled = True
                    break
                self.state.epoch = epoch
                self._maybe_close_mosaic(epoch)
                self.callbacks.on_epoch_start(self, epoch)

                losses = self.train_epoch(epoch)
                if self.cancel_event.is_set():
                    cancelled = True
                    break

                map50 = map5095 = 0.0
                per_class: Dict[int, float] = {}
                if val_dataset is not None:
                    map50, map5095, per_class = self.validate(val_dataset)
                    self.callbacks.on_val_end(self, {"mAP50": map50, "mAP50-95": map5095})
                fit = compute_fitness(map50, map5095)

                if val_dataset is not None:
                    is_best = self.state.best_fitness is None or fit > self.state.best_fitness
                else:
                    mean_loss = losses["box"] + losses["cls"] + losses["dfl"]
                    is_best = mean_loss < best_loss
                    if is_best:
                        best_loss = mean_loss

                if is_best:
                    self.state.best_fitness = fit
                    self.state.best_epoch = epoch + 1
                    self.state.patience_counter = 0
                    best_map50, best_map5095, best_per_class = map50, map5095, per_class
                    self._save(self.paths.best, epoch + 1)
                else:
                    self.state.patience_counter += 1

                metrics = EpochMetrics(
                    epoch=epoch + 1,
                    total_epochs=self.epochs,
                    box_loss=losses["box"],
                    cls_loss=losses["cls"],
                    dfl_loss=losses["dfl"],
                    distill_loss=losses["distill"],
                    map50=map50,
                    map5095=map5095,
                    fitness=fit,
                    lr=float(self.optimizer.param_groups[0]["lr"]),
                    is_best=is_best,
                )
                self.state.metrics = metrics.as_dict()
                self.callbacks.on_epoch_end(self, epoch, metrics)
                self._save(self.paths.last, epoch + 1)
                epochs_completed = epoch + 1

                if self.state.patience_counter >= int(self.config["patience"]):
                    self.logger.info(
                        "train/early_stop",
                        f"no improvement for {self.state.patience_counter} epochs; stopping after epoch {epoch + 1}"
                    )
                    self.stop_training = True
                    break
        except Exception as e:
            self.logger.error("train/exception", repr(e))
            try:
                self._save(self.paths.last, epoch + 1)
            except Exception as save_err:
                self.logger.error("train/save_last", f"could not write {self.paths.last}: {save_err!r}")
            raise

        if cancelled:
            self.logger.warning("train/cancelled", f"cancelled during epoch {epoch + 1}")
            self._save(self.paths.last, epochs_completed)

        result = TrainResult(
            model_version=str(self.config["model_version"]),
            model_variant=str(getattr(de_parallel(self.model), "variant", self.config["variant"])),
            param_count=self.param_count,
            best_epoch=max(self.state.best_epoch, 0),
            best_fitness=float(self.state.best_fitness or 0.0),
            best_map50=best_map50,
            best_map5095=best_map5095,
            training_time=perf_counter() - t0,
            per_class_ap50=best_per_class,
            epochs_completed=epochs_completed,
            cancelled=cancelled,
            save_dir=self.paths.root,
        )
        self.callbacks.on_train_end(self, result)
        self.logger.flush()
        return result
