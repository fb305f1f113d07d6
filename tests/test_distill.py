"""
Tests for teacher -> student distillation.
"""
import pytest
import torch

from utils.distill import DistillationLoss, freeze_teacher

def test_identical_logits_give_zero_loss():
    torch.manual_seed(0)
    box, cls = torch.randn(2, 64, 10), torch.randn(2, 3, 10)
    loss, item = DistillationLoss(mode="logit")(box, cls, box.clone(), cls.clone())
    assert abs(float(loss)) < 1e-5
    assert not item.requires_grad

def test_logit_loss_pulls_student_toward_teacher():
    torch.manual_seed(0)
    s_cls = torch.randn(1, 3, 5, requires_grad=True)
    s_box = torch.randn(1, 8, 5, requires_grad=True)
    t_cls, t_box = torch.randn(1, 3, 5) + 3.0, torch.randn(1, 8, 5)
    loss, _ = DistillationLoss(mode="logit", temperature=2.0)(s_box, s_cls, t_box, t_cls)
    assert float(loss) > 0
    loss.backward()
    assert s_cls.grad.abs().sum() > 0 and s_box.grad.abs().sum() > 0

def test_identity_adapters_give_zero_feature_loss():
    feats = [torch.randn(1, c, 4, 4) for c in (8, 16)]
    dl = DistillationLoss(mode="feature", student_channels=(8, 16), teacher_channels=(8, 16))
    loss, _ = dl(torch.zeros(1, 4, 1), torch.zeros(1, 1, 1), torch.zeros(1, 4, 1), torch.zeros(1, 1, 1),
                 feats, [f.clone() for f in feats])
    assert abs(float(loss)) < 1e-6

def test_channel_mismatch_uses_trainable_adapter():
    dl = DistillationLoss(mode="both", student_channels=(8, ), teacher_channels=(16, ))
    assert dl.adapters[0].weight.shape == (16, 8, 1, 1)
    assert dl.use_logits and dl.use_features

def test_invalid_configuration():
    with pytest.raises(ValueError):
        DistillationLoss(mode="attention")
    with pytest.raises(ValueError):
        DistillationLoss(mode="feature")
    dl = DistillationLoss(mode="feature", student_channels=(4, ), teacher_channels=(4, ))
    with pytest.raises(ValueError):
        dl(torch.zeros(1, 4, 1), torch.zeros(1, 1, 1), torch.zeros(1, 4, 1), torch.zeros(1, 1, 1))

def test_freeze_teacher(mock_model_factory):
    teacher = freeze_teacher(mock_model_factory(seed=3))
    assert not teacher.training
    assert all(not p.requires_grad for p in teacher.parameters())
