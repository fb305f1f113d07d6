"""
Tests for the v8 reference network and the model registry.
"""
import pytest
import torch

from models.registry import available_versions, create_loss, create_model, register_model, variants
from models.v8.layers import Detect
from models.v8.model import SCALES, YOLOv8
from tests.config import DEVICE, IMG_SIZE, NUM_CLASSES, REG_MAX

def test_registry_knows_v8():
    assert "v8" in available_versions()
    assert set(variants("v8")) == set(SCALES)

def test_unknown_version_and_variant():
    with pytest.raises(KeyError):
        create_model("v0", 3)
    with pytest.raises(ValueError):
        create_model("v8", 3, variant="q")

def test_loss_factory_attached(model):
    loss = create_loss("v8", model, {"num_classes": NUM_CLASSES})
    assert loss.nc == NUM_CLASSES

def test_register_custom_version():
    register_model("tiny-test", lambda nc, variant, **kw: YOLOv8(nc=nc, variant="n"), ("a", ))
    try:
        m = create_model("TINY-TEST", 2, "a")
        assert isinstance(m, YOLOv8) and m.nc == 2
        with pytest.raises(KeyError):
            create_loss("tiny-test", m)
    finally:
        from models import registry
        registry._REGISTRY.pop("tiny-test", None)

def test_forward_train_shapes(model, dummy_input):
    model.train()
    raw_box, raw_cls, sizes = model.forward_train(dummy_input)
    n = sum(h * w for h, w in sizes)
    assert sizes == [(IMG_SIZE // s, IMG_SIZE // s) for s in (8, 16, 32)]
    assert raw_box.shape == (dummy_input.shape[0], 4 * REG_MAX, n)
    assert raw_cls.shape == (dummy_input.shape[0], NUM_CLASSES, n)

def test_inference_path_is_decoded(model, dummy_input):
    model.eval()
    with torch.no_grad():
        boxes, scores, feats = model(dummy_input)
    model.train()
    n = sum((IMG_SIZE // s)**2 for s in (8, 16, 32))
    assert boxes.shape == (dummy_input.shape[0], 4, n)
    assert scores.shape == (dummy_input.shape[0], NUM_CLASSES, n)
    assert scores.min() >= 0 and scores.max() <= 1
    assert torch.all(boxes[:, 2:] >= 0)
    assert [f.shape[1] for f in feats] == list(model.feature_channels)

def test_features_hook_matches_forward_train(model, dummy_input):
    model.eval()
    with torch.no_grad():
        a = model.forward_train(dummy_input)
        b = model.forward_train_with_features(dummy_input)
    model.train()
    assert torch.equal(a[0], b[0]) and torch.equal(a[1], b[1])
    assert len(b[3]) == 3

def test_dfl_weights_are_bin_indices(model):
    w = model.detect.dfl.conv.weight.view(-1)
    assert torch.equal(w.cpu(), torch.arange(REG_MAX, dtype=torch.float32))
    assert not model.detect.dfl.conv.weight.requires_grad

def test_variant_scaling():
    n = YOLOv8(nc=2, variant="n")
    s = YOLOv8(nc=2, variant="s")
    assert n.feature_channels == (64, 128, 256)
    assert s.feature_channels == (128, 256, 512)
    assert sum(p.numel() for p in s.parameters()) > sum(p.numel() for p in n.parameters())

def test_bad_variant_in_constructor():
    with pytest.raises(ValueError):
        YOLOv8(nc=2, variant="z")

def test_head_decode_goes_through_dfl_module(model, dummy_input):
    model.eval()
    dfl_weight = model.detect.dfl.conv.weight
    try:
        with torch.no_grad():
            raw_box, raw_cls, sizes = model.forward_train(dummy_input)
            boxes, _ = model.detect.decode(raw_box, raw_cls, sizes)
            reference = model.detect.decoder.decode(raw_box, sizes, xywh=True)
            dfl_weight.mul_(2.0)
            stretched, _ = model.detect.decode(raw_box, raw_cls, sizes)
    finally:
        with torch.no_grad():
            dfl_weight.copy_(torch.arange(REG_MAX, dtype=dfl_weight.dtype).view_as(dfl_weight))
        model.train()
    assert torch.allclose(boxes, reference, atol=1e-4)
    # doubling the bin values doubles every ltrb distance, hence w and h
    assert torch.allclose(stretched[:, 2:], 2 * boxes[:, 2:], atol=1e-3)

def test_detect_rejects_wrong_level_count(model, dummy_input):
    model.eval()
    with torch.no_grad():
        feats = model.features(dummy_input)
        with pytest.raises(ValueError):
            model.detect.forward_raw(feats[:2])
    model.train()
    with pytest.raises(ValueError):
        Detect(nc=2, ch=(16, 32), strides=(8, 16, 32))
