"""
Tests for the in-memory dataset and batch collation.
"""
import torch

from core.dataset import DetectionDataset, TensorDetectionDataset, collate, synthetic_dataset

def test_collate_pads_gt_tables():
    images = [torch.zeros(3, 8, 8), torch.ones(3, 8, 8)]
    labels = [torch.tensor([[1, 0.1, 0.1, 0.5, 0.5], [2, 0.2, 0.2, 0.9, 0.9]]), torch.zeros(0, 5)]
    imgs, boxes, cls, mask = collate(images, labels)
    assert imgs.shape == (2, 3, 8, 8)
    assert boxes.shape == (2, 2, 4) and cls.shape == (2, 2, 1) and mask.shape == (2, 2, 1)
    assert mask[:, :, 0].tolist() == [[1.0, 1.0], [0.0, 0.0]]
    assert cls[0, :, 0].tolist() == [1, 2]
    assert boxes[1].abs().sum() == 0

def test_collate_without_any_labels():
    _, boxes, cls, mask = collate([torch.zeros(3, 4, 4)], [torch.zeros(0, 5)])
    assert boxes.shape == (1, 0, 4) and mask.shape == (1, 0, 1)

def test_dataset_contract_and_stats():
    ds = synthetic_dataset(6, img_size=32, num_classes=2, seed=1)
    assert isinstance(ds, DetectionDataset)
    assert ds.count == 6
    total, per_class = ds.get_label_stats()
    assert total == sum(per_class.values()) == sum(int(lb.shape[0]) for lb in ds.labels)

def test_batches_cover_dataset_once():
    ds = synthetic_dataset(5, img_size=16, num_classes=2, seed=0)
    batches = list(ds.get_batches(2, shuffle=True))
    assert [b[0].shape[0] for b in batches] == [2, 2, 1]

def test_shuffle_is_seeded():
    a = synthetic_dataset(8, img_size=16, seed=3)
    b = synthetic_dataset(8, img_size=16, seed=3)
    for x, y in zip(a.get_batches(3), b.get_batches(3)):
        assert torch.equal(x[0], y[0])

def test_unshuffled_order_is_dataset_order():
    ds = synthetic_dataset(3, img_size=16, seed=0)
    imgs = next(ds.get_batches(3, shuffle=False))[0]
    for i in range(3):
        assert torch.equal(imgs[i], ds.images[i])

def test_set_pipeline_applies_and_records():
    ds = TensorDetectionDataset([torch.zeros(3, 4, 4)], [torch.tensor([[0, 0.1, 0.1, 0.4, 0.4]])])
    assert ds.use_mosaic
    ds.set_pipeline(lambda im, lb: (im + 1, lb), use_mosaic=False)
    ds.set_pipeline(ds.pipeline, use_mosaic=False)
    assert not ds.use_mosaic and ds.pipeline_changes == 2
    imgs = next(ds.get_batches(1))[0]
    assert torch.all(imgs == 1)
