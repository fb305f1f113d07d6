import os
import json
import torch
import numpy as np
from enum import IntEnum
import threading
import queue
from time import perf_counter
from pathlib import Path
from datetime import datetime
from threading import Lock
from typing import Any, Optional, Union, Dict, List

from utils.helpers import suppress_stderr_fd

os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "3")
with suppress_stderr_fd():
    from torch.utils.tensorboard import SummaryWriter

class LogLevel(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    BASIC = 50  # Scalars for TensorBoard: losses, mAP, lr
    HEAVY = 60  # Per-group / per-layer detail for TensorBoard

class YOLOLogger:
    """
    Run logger: console + log.txt lines, structured log.jsonl records and
    TensorBoard scalars. File and TensorBoard writes happen on a worker thread.
    """
    def __init__(
        self,
        log_dir: Union[str, Path] = "runs/exp",
        level: Union[LogLevel, List[LogLevel], str, int] = LogLevel.INFO,
        console: bool = True,
        tensorboard: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.console_min_level: LogLevel = LogLevel.INFO
        self.tb_basic_enabled: bool = True
        self.tb_heavy_enabled: bool = False
        self.apply_level_tokens(level)
        self.console = bool(console)
        env_tb = os.getenv("YOLO_TENSORBOARD", "").strip().lower()
        self.tensorboard = tensorboard and env_tb not in ("0", "false", "no")
        self.step = 0
        self.writer = SummaryWriter(str(self.log_dir)) if self.tensorboard else None
        self.log_file = self.log_dir / "log.txt"
        self.jsonl_file = self.log_dir / "log.jsonl"
        self._lock = Lock()
        self._t0 = perf_counter()
        self._q: "queue.Queue[dict]" = queue.Queue(maxsize=10000)
        self._worker = threading.Thread(target=self._run, name="yolo-logger", daemon=True)
        self._worker.start()
        self._write_text("logger initialized", LogLevel.INFO)

    def _parse_tokens(self, level_in: Union[LogLevel, List[LogLevel], str, int]) -> List[str]:
        if isinstance(level_in, LogLevel):
            return [level_in.name]
        if isinstance(level_in, int):
            return [LogLevel(level_in).name]
        if isinstance(level_in, str):
            return [p.strip().upper() for p in level_in.split(',') if p.strip()]
        return [l.name if isinstance(l, LogLevel) else str(l).upper() for l in level_in]

    def apply_level_tokens(self, level_in: Union[LogLevel, List[LogLevel], str, int]):
        """
        Parse level tokens and configure filters.
        - console tokens: DEBUG, INFO, WARNING, ERROR set the threshold (default INFO)
        - TensorBoard tokens: BASIC (always on), HEAVY (adds per-group detail)
        """
        tokens = self._parse_tokens(level_in)
        unknown = [t for t in tokens if t not in LogLevel.__members__]
        if unknown:
            raise ValueError(f"unknown log level token(s): {unknown}")
        cli_tokens = [t for t in tokens if t in ("DEBUG", "INFO", "WARNING", "ERROR")]
        self.console_min_level = min(LogLevel[t] for t in cli_tokens) if cli_tokens else LogLevel.INFO
        self.tb_heavy_enabled = "HEAVY" in tokens
        self.tb_basic_enabled = True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def _should_log_console(self, level: LogLevel) -> bool:
        if level not in (LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARNING, LogLevel.ERROR):
            return False
        return level >= self.console_min_level

    def _format_line(self, text: str, level: LogLevel) -> str:
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        return f"[{ts}] [{level.name:5s}] {text}"

    def _enqueue(self, rec: dict):
        try:
            self._q.put_nowait(rec)
        except queue.Full:
            pass

    def _write_text(self, text: str, level: LogLevel):
        if not self._should_log_console(level):
            return
        self._enqueue({"type": "text", "line": self._format_line(text, level)})

    def _log_to_tensorboard(self, tag: str, data: Any, step: int):
        if self.writer is None:
            return
        if isinstance(data, dict):
            for k, v in data.items():
                self._log_to_tensorboard(f"{tag}/{k}", v, step)
        elif isinstance(data, torch.Tensor) and data.numel() == 1:
            self._enqueue({"type": "tb_scalar", "tag": tag, "value": float(data.item()), "step": step})
        elif isinstance(data, (int, float, np.number)):
            self._enqueue({"type": "tb_scalar", "tag": tag, "value": float(data), "step": step})
        else:
            self._enqueue({"type": "tb_text", "tag": tag, "text": str(data), "step": step})

    def log_text(self, tag: str, text: str, step: Optional[int] = None):
        if self.writer is not None:
            self._enqueue({
                "type": "tb_text", "tag": tag, "text": text,
                "step": int(self.step if step is None else step)
            })

    def log(
        self,
        tag: str,
        data: Any,
        level: LogLevel = LogLevel.INFO,
        step: Optional[int] = None,
        console_msg: Optional[str] = None
    ):
        if step is not None:
            self.step = int(step)
        if level in (LogLevel.BASIC, LogLevel.HEAVY):
            if level == LogLevel.HEAVY and not self.tb_heavy_enabled:
                return
            self._log_to_tensorboard(tag, data, self.step)
            return

        if not self._should_log_console(level):
            return
        rec = {
            "time": datetime.now().isoformat(), "elapsed_s": round(perf_counter() - self._t0, 3),
            "step": int(self.step), "level": level.name, "tag": tag
        }
        if isinstance(data, (int, float, str, dict, list)):
            rec["data"] = data
        elif isinstance(data, torch.Tensor) and data.numel() == 1:
            rec["data"] = float(data.item())
        else:
            rec["data"] = str(data)
        self._enqueue({"type": "jsonl", "record": rec})
        msg = console_msg if console_msg is not None else rec["data"]
        self._write_text(f"{tag}: {msg}", level)

    def debug(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.DEBUG, **kwargs)

    def info(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.INFO, **kwargs)

    def basic(self, tag: str, data: Any, **kwargs):
        """Log basic metrics like mAP50-95, cls loss, dfl loss, box loss."""
        self.log(tag, data, LogLevel.BASIC, **kwargs)

    def warning(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.WARNING, **kwargs)

    def error(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.ERROR, **kwargs)

    def heavy(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.HEAVY, **kwargs)

    def set_step(self, step: int):
        self.step = int(step)

    def log_losses(self, losses: Dict[str, float], step: Optional[int] = None):
        s = self.step if step is None else step
        for k, v in losses.items():
            self.basic(f"loss/{k}", float(v), step=s)
        tot = float(sum(losses.values())) if losses else 0.0
        self.basic("loss/total", tot, step=s)

    def log_metrics(self, metrics: Dict[str, float], step: Optional[int] = None):
        s = self.step if step is None else step
        for k, v in metrics.items():
            self.basic(f"metrics/{k}", float(v), step=s)

    def log_lr(self, optimizer: torch.optim.Optimizer, step: Optional[int] = None):
        s = self.step if step is None else step
        for g in optimizer.param_groups:
            name = g.get("name", "group")
            self.heavy(f"lr/{name}", float(g.get("lr", 0.0)), step=s)
            if "momentum" in g:
                self.heavy(f"momentum/{name}", float(g["momentum"]), step=s)

    def flush(self, timeout: float = 5.0):
        """Block until queued records are written (or timeout)."""
        deadline = perf_counter() + timeout
        while self._q.unfinished_tasks and perf_counter() < deadline:
            threading.Event().wait(0.01)
        if self.writer is not None:
            self.writer.flush()

    def close(self):
        self._write_text("logger closed", LogLevel.INFO)
        self._enqueue({"type": "_stop"})
        if self._worker.is_alive():
            self._worker.join(timeout=5.0)
        if self.writer is not None:
            self.writer.flush()
            self.writer.close()
            self.writer = None

    def _handle(self, rec: dict):
        kind = rec.get("type")
        if kind == "text":
            if self.console:
                print(rec["line"], flush=True)
            with self._lock:
                with open(self.log_file, "a", encoding="utf-8") as f:
                    f.write(rec["line"] + "\n")
        elif kind == "jsonl":
            with self._lock:
                with open(self.jsonl_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(rec["record"], default=str) + "\n")
        elif kind == "tb_scalar" and self.writer is not None:
            self.writer.add_scalar(rec["tag"], rec["value"], rec["step"])
        elif kind == "tb_text" and self.writer is not None:
            self.writer.add_text(rec["tag"], rec["text"], rec["step"])

    def _run(self):
        while True:
            rec = self._q.get()
            try:
                if rec.get("type") == "_stop":
                    break
                self._handle(rec)
            except OSError as e:
                print(f"[logger] write failed: {e}", flush=True)
            finally:
                self._q.task_done()

_logger: Optional[YOLOLogger] = None

def get_logger(log_dir: Optional[Union[str, Path]] = None, **kwargs) -> YOLOLogger:
    """
    Process-wide logger. Passing a different log_dir closes the current logger
    and opens a new one there (one logger per run directory).
    """
    global _logger
    if _logger is not None and not _logger._worker.is_alive():
        _logger = None
    if _logger is not None and log_dir is not None and Path(log_dir) != _logger.log_dir:
        _logger.close()
        _logger = None
    if _logger is None:
        _logger = YOLOLogger(log_dir or "runs/exp", **kwargs)
    return _logger

def set_log_level(level: Union[LogLevel, str, int, List[Union[LogLevel, str]]]):
    if _logger is None:
        return
    _logger.apply_level_tokens(level)
