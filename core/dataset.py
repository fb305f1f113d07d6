"""
core/dataset.py

Dataset contract consumed by the trainer and validator, plus an in-memory
implementation used for tests and synthetic runs.
"""
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np
import torch

Batch = Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]

@runtime_checkable
class DetectionDataset(Protocol):
    """
    What the training loop needs from a dataset.

    get_batches yields (images [B,3,H,W] in [0,1], gt_boxes [B,M,4] normalized
    xyxy, gt_labels [B,M,1] long, gt_mask [B,M,1] float); M is the largest GT
    count in the batch and unused slots are zero.
    """
    @property
    def count(self) -> int:
        ...

    def get_batches(self, batch_size: int, shuffle: bool = True) -> Iterator[Batch]:
        ...

    def set_pipeline(self, pipeline, use_mosaic: bool = False) -> None:
        ...

    def get_label_stats(self) -> Tuple[int, Dict[int, int]]:
        ...

def collate(images: Sequence[torch.Tensor], labels: Sequence[torch.Tensor]) -> Batch:
    """Stack images and pad per-image [K,5] label rows into fixed GT tables."""
    imgs = torch.stack([im.float() for im in images], 0)
    B = len(labels)
    M = max((int(lb.shape[0]) for lb in labels), default=0)
    gt_boxes = torch.zeros(B, M, 4)
    gt_labels = torch.zeros(B, M, 1, dtype=torch.long)
    gt_mask = torch.zeros(B, M, 1)
    for i, lb in enumerate(labels):
        k = int(lb.shape[0])
        if k:
            gt_labels[i, :k, 0] = lb[:, 0].long()
            gt_boxes[i, :k] = lb[:, 1:5].float()
            gt_mask[i, :k] = 1.0
    return imgs, gt_boxes, gt_labels, gt_mask

class TensorDetectionDataset:
    """
    In-memory dataset of images and per-image label tables.

    Args:
        images: [K,3,H,W] tensor or a list of [3,H,W] tensors in [0,1]
        labels: per image a [k,5] tensor of (cls, x1, y1, x2, y2), normalized
        seed: seed of the shuffling generator
        pipeline: optional callable (image, labels) -> (image, labels)
        use_mosaic: recorded mosaic flag; the trainer turns it off near the end
    """
    def __init__(
        self,
        images,
        labels: Sequence[torch.Tensor],
        seed: int = 0,
        pipeline: Optional[Callable] = None,
        use_mosaic: bool = True,
    ):
        self.images = list(images)
        self.labels = [torch.as_tensor(lb, dtype=torch.float32).reshape(-1, 5) for lb in labels]
        if len(self.images) != len(self.labels):
            raise ValueError(f"{len(self.images)} images but {len(self.labels)} label tables")
        self.pipeline = pipeline
        self.use_mosaic = use_mosaic
        self.pipeline_changes = 0
        self.rng = np.random.default_rng(seed)

    @property
    def count(self) -> int:
        return len(self.images)

    def __len__(self):
        return self.count

    def set_pipeline(self, pipeline, use_mosaic: bool = False):
        self.pipeline = pipeline
        self.use_mosaic = bool(use_mosaic)
        self.pipeline_changes += 1

    def get_label_stats(self) -> Tuple[int, Dict[int, int]]:
        """(total boxes, {class: box count})."""
        per_class: Dict[int, int] = {}
        for lb in self.labels:
            for c in lb[:, 0].long().tolist():
                per_class[c] = per_class.get(c, 0) + 1
        return sum(per_class.values()), per_class

    def _sample(self, i: int):
        image, labels = self.images[i], self.labels[i]
        if self.pipeline is not None:
            image, labels = self.pipeline(image, labels)
        return image, labels

    def get_batches(self, batch_size: int, shuffle: bool = True) -> Iterator[Batch]:
        order = self.rng.permutation(self.count) if shuffle else np.arange(self.count)
        for start in range(0, self.count, batch_size):
            samples = [self._sample(int(i)) for i in order[start:start + batch_size]]
            yield collate([s[0] for s in samples], [s[1] for s in samples])

def synthetic_dataset(
    n: int,
    img_size: int = 64,
    num_classes: int = 2,
    max_boxes: int = 3,
    seed: int = 0,
) -> TensorDetectionDataset:
    """Noise images with bright class-coded rectangles; labels match the drawn boxes."""
    g = torch.Generator().manual_seed(seed)
    images: List[torch.Tensor] = []
    labels: List[torch.Tensor] = []
    for _ in range(n):
        img = torch.rand(3, img_size, img_size, generator=g) * 0.2
        k = int(torch.randint(1, max_boxes + 1, (1, ), generator=g))
        rows = []
        for _ in range(k):
            cls = int(torch.randint(0, num_classes, (1, ), generator=g))
            w, h = (torch.rand(2, generator=g) * 0.4 + 0.15).tolist()
            x1 = float(torch.rand(1, generator=g)) * (1 - w)
            y1 = float(torch.rand(1, generator=g)) * (1 - h)
            xs, ys = int(x1 * img_size), int(y1 * img_size)
            xe, ye = int((x1 + w) * img_size), int((y1 + h) * img_size)
            img[cls % 3, ys:ye, xs:xe] = 1.0
            rows.append([cls, x1, y1, x1 + w, y1 + h])
        images.append(img)
        labels.append(torch.tensor(rows, dtype=torch.float32))
    return TensorDetectionDataset(images, labels, seed=seed)
