#!/usr/bin/env python3
import os

os.environ["TF_CPP_MIN_LOG_LEVEL"] = "3"  # 0=all, 1=INFO, 2=WARNING, 3=ERROR

import argparse
from pathlib import Path

from core.config import get_config
from core.dataset import synthetic_dataset
from core.trainer import Trainer
from models.registry import available_versions, create_model
from utils.helpers import load_yaml
from utils.logging import get_logger, set_log_level
from utils.paths import increment_path
from utils.weight_loader import load_weights

def _parse_overrides(text: str) -> dict:
    """k:v,k:v pairs (or a YAML path) -> dict with bool/int/float coercion."""
    p = Path(text)
    if p.exists() and p.is_file():
        return load_yaml(p)
    result = {}
    parts = [x.strip() for x in text.split(',') if x.strip()]
    for item in parts:
        if ':' not in item:
            continue
        k, v = item.split(':', 1)
        k, v = k.strip(), v.strip()
        if v.lower() in ("true", "false"):
            result[k] = v.lower() == "true"
            continue
        if v.lower() in ("none", "null"):
            result[k] = None
            continue
        try:
            if any(c in v for c in ['.', 'e', 'E']):
                result[k] = float(v)
            else:
                result[k] = int(v)
        except ValueError:
            result[k] = v
    return result

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="yolo-forge training")
    parser.add_argument("--hyp", type=str, default=None, help="Hyperparameter YAML")
    parser.add_argument(
        "--hypo", type=str, default=None, help="Inline overrides k:v,k:v or YAML path"
    )
    parser.add_argument(
        "--model-version", type=str, default=None, help=f"Network family {available_versions()}"
    )
    parser.add_argument("--variant", type=str, default=None, help="n/s/m/l/x")
    parser.add_argument("--num-classes", type=int, default=None)
    parser.add_argument("--weights", type=str, default=None, help=".pt checkpoint to import")
    parser.add_argument(
        "--strict", action="store_true", help="Fail unless every checkpoint tensor maps cleanly"
    )
    parser.add_argument("--epochs", type=int, default=None)
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--img-size", type=int, default=None)
    parser.add_argument("--device", type=str, default=None)
    parser.add_argument("--save-dir", type=str, default="runs/train")
    parser.add_argument("--name", type=str, default="exp")
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        help=(
            "Logging controls (comma-separated). CLI levels: DEBUG, INFO, WARNING, ERROR. "
            "TensorBoard categories: BASIC (default), HEAVY. Example: --log-level WARNING,HEAVY"
        ),
    )
    parser.add_argument(
        "--synthetic",
        type=int,
        default=0,
        metavar="N",
        help="Train on N generated images (plus N // 4 for validation)"
    )
    return parser

def main(argv=None):
    args = build_parser().parse_args(argv)

    run_dir = increment_path(Path(args.save_dir) / args.name)
    logger = get_logger(run_dir, level=args.log_level)
    set_log_level(args.log_level)

    overrides = {
        "model_version": args.model_version,
        "variant": args.variant,
        "num_classes": args.num_classes,
        "epochs": args.epochs,
        "batch_size": args.batch_size,
        "img_size": args.img_size,
        "device": args.device,
    }
    hyp = {k: v for k, v in overrides.items() if v is not None}
    if args.hypo:
        hyp.update(_parse_overrides(args.hypo))
    hyp["save_dir"] = str(run_dir)
    hyp["log_level"] = args.log_level
    config = get_config(hyp=hyp, hyp_path=args.hyp)

    if args.synthetic <= 0:
        raise SystemExit("no dataset given: pass --synthetic N to train on generated images")
    nc = int(config["num_classes"])
    train_ds = synthetic_dataset(
        args.synthetic, img_size=config["img_size"], num_classes=nc, seed=config["seed"]
    )
    val_ds = synthetic_dataset(
        max(1, args.synthetic // 4),
        img_size=config["img_size"],
        num_classes=nc,
        seed=config["seed"] + 1
    )

    model = create_model(
        config["model_version"], nc, config["variant"], reg_max=int(config["reg_max"])
    )
    if args.weights:
        result = load_weights(model, args.weights, strict=args.strict)
        if not result.is_fully_loaded or result.unmapped_keys:
            logger.warning(
                "weights/partial",
                f"{result.missing} parameters missing, {result.skipped} checkpoint tensors skipped, "
                f"{len(result.unmapped_keys)} unmapped"
            )

    trainer = Trainer(model, train_ds, val_ds, cfg=config)
    result = trainer.fit()
    logger.info(
        "train/done",
        f"best epoch {result.best_epoch}: mAP50 {result.best_map50:.4f} "
        f"mAP50-95 {result.best_map5095:.4f}; results in {result.save_dir}"
    )
    logger.close()
    return result

if __name__ == "__main__":
    main()
