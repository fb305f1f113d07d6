import torch
import torch.nn as nn
from tqdm import tqdm

from .base import BaseRunner
from .config import get_config
from utils.boxes import clip_boxes_, xywh2xyxy
from utils.metrics import MAPMetric

class Validator(BaseRunner):
    """
    mAP pass over a DetectionDataset.

    The model's eval forward returns (boxes_xywh, class probabilities, ...);
    pass apply_sigmoid=True for a head that returns class logits instead. The
    trainer swaps EMA weights in before calling `validate` and restores the
    live weights afterwards.
    """
    def __init__(self, model: nn.Module, apply_sigmoid: bool = False, **kwargs):
        super().__init__(model, **kwargs)
        self.apply_sigmoid = bool(apply_sigmoid)
        config = get_config(cfg=self.cfg)
        self.nc = int(getattr(model, "nc", config["num_classes"]))
        self.img_size = int(config["img_size"])
        self.conf_thresh = float(config["conf_thresh"])
        self.batch_size = int(config["val_batch_size"] or 2 * config["batch_size"])
        self.metric = MAPMetric(self.nc)

    def predictions(self, boxes_xywh: torch.Tensor, scores: torch.Tensor):
        """
        Per-image (boxes xyxy [P,4], conf [P], cls [P]) from decoded head outputs.

        Args:
            boxes_xywh: [B, 4, N] pixels
            scores: [B, C, N] probabilities (logits when apply_sigmoid is set)
        """
        if self.apply_sigmoid:
            scores = scores.sigmoid()
        conf, cls = scores.max(1)  # (B,N)
        boxes = clip_boxes_(xywh2xyxy(boxes_xywh.permute(0, 2, 1)), (self.img_size, self.img_size))  # (B,N,4)
        out = []
        for b in range(boxes.shape[0]):
            keep = conf[b] > self.conf_thresh
            out.append((boxes[b][keep], conf[b][keep], cls[b][keep]))
        return out

    @torch.no_grad()
    def validate(self, dataset, model: nn.Module = None):
        """Returns (map50, map5095, {class: AP50})."""
        eval_model = model if model is not None else self.model
        was_training = eval_model.training
        eval_model.eval()
        self.metric.reset()

        nb = -(-int(dataset.count) // self.batch_size)
        pbar = tqdm(
            dataset.get_batches(self.batch_size, shuffle=False),
            total=nb,
            desc="val",
            leave=False
        )
        try:
            for images, gt_boxes, gt_labels, gt_mask in pbar:
                images = self.preprocess(images)
                boxes_xywh, scores, _ = eval_model(images)
                preds = self.predictions(boxes_xywh.float(), scores.float())
                for b, (pb, pc, pl) in enumerate(preds):
                    real = gt_mask[b, :, 0] > 0
                    gt = gt_boxes[b][real].float() * self.img_size
                    self.metric.update(pb.cpu(), pc.cpu(), pl.cpu(), gt, gt_labels[b][real][:, 0])
        finally:
            pbar.close()
            eval_model.train(was_training)

        map50, map5095, per_class = self.metric.compute()
        self.logger.debug(
            "val/result",
            {"mAP50": map50, "mAP50-95": map5095, "gt": int(self.metric.gt_counts.sum())}
        )
        return map50, map5095, per_class
