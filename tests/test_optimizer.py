"""
Tests for parameter grouping, the optimizer factory and the warmup scheduler.
"""
import math

import pytest
import torch
import torch.nn as nn

from utils.optimizer import WarmupScheduler, build_optimizer, build_param_groups, lr_lambda, resolve_optimizer

class ConvNet(nn.Module):
    def __init__(self):
        super().__init__()
        self.conv = nn.Conv2d(3, 8, 3, bias=False)
        self.bn = nn.BatchNorm2d(8)
        self.fc = nn.Linear(8, 2)

def test_param_groups_partition():
    m = ConvNet()
    g_norm, g_weight, g_bias = build_param_groups(m)
    assert [id(p) for p in g_norm] == [id(m.bn.weight)]
    assert {id(p) for p in g_weight} == {id(m.conv.weight), id(m.fc.weight)}
    assert {id(p) for p in g_bias} == {id(m.bn.bias), id(m.fc.bias)}

def test_build_optimizer_groups_and_decay():
    opt = build_optimizer(
        ConvNet(), name="SGD", lr0=0.01, momentum=0.9, weight_decay=0.0005,
        batch_size=16, accumulate=4, nominal_batch=64,
    )
    assert isinstance(opt, torch.optim.SGD)
    groups = {g["name"]: g for g in opt.param_groups}
    assert set(groups) == {"biases", "norm_weights", "weights"}
    assert groups["biases"]["weight_decay"] == 0.0
    assert groups["norm_weights"]["weight_decay"] == 0.0
    assert groups["weights"]["weight_decay"] == pytest.approx(0.0005)
    assert all(g["initial_lr"] == 0.01 for g in opt.param_groups)

def test_weight_decay_scales_with_effective_batch():
    opt = build_optimizer(ConvNet(), name="AdamW", weight_decay=0.0005, batch_size=8, accumulate=1, nominal_batch=64)
    groups = {g["name"]: g for g in opt.param_groups}
    assert isinstance(opt, torch.optim.AdamW)
    assert groups["weights"]["weight_decay"] == pytest.approx(0.0005 * 8 / 64)

def test_resolve_auto_optimizer():
    assert resolve_optimizer("auto", 0.01, 0.937, 80, 20000) == ("SGD", 0.01, 0.9)
    name, lr, momentum = resolve_optimizer("auto", 0.01, 0.937, 80, 500)
    assert name == "AdamW" and lr == round(0.002 * 5 / 84, 6) and momentum == 0.9
    assert resolve_optimizer("Adam", 0.003, 0.95, 80, 500) == ("Adam", 0.003, 0.95)

def test_unknown_optimizer_raises():
    with pytest.raises(ValueError):
        build_optimizer(ConvNet(), name="Lion")

def test_lr_lambda_endpoints():
    lin = lr_lambda(11, 0.01, cos_lr=False)
    cos = lr_lambda(11, 0.01, cos_lr=True)
    for lf in (lin, cos):
        assert lf(0) == pytest.approx(1.0)
        assert lf(10) == pytest.approx(0.01)
    assert lin(5) == pytest.approx(1 + (0.01 - 1) * 5 / 10)
    assert cos(5) == pytest.approx(((1 - math.cos(math.pi * 5 / 10)) / 2) * (0.01 - 1) + 1)

def test_warmup_interpolates_lr_and_momentum():
    opt = build_optimizer(ConvNet(), name="SGD", lr0=0.01, momentum=0.9)
    sched = WarmupScheduler(
        opt, epochs=10, batches_per_epoch=100, lrf=0.01, warmup_epochs=2,
        warmup_bias_lr=0.1, warmup_momentum=0.8, momentum=0.9,
    )
    assert sched.warmup_iters == 200
    sched.step(0, 0)
    groups = {g["name"]: g for g in opt.param_groups}
    assert groups["biases"]["lr"] == pytest.approx(0.1)
    assert groups["weights"]["lr"] == pytest.approx(0.0)
    assert groups["weights"]["momentum"] == pytest.approx(0.8)

    sched.step(1, 100)
    target = 0.01 * sched.lf(1)
    assert groups["weights"]["lr"] == pytest.approx(target / 2)
    assert groups["biases"]["lr"] == pytest.approx((0.1 + target) / 2)
    assert groups["weights"]["momentum"] == pytest.approx(0.85)

    sched.step(5, 550)
    assert all(g["lr"] == pytest.approx(0.01 * sched.lf(5)) for g in opt.param_groups)

def test_warmup_has_a_floor_of_100_iterations():
    opt = build_optimizer(ConvNet(), name="SGD")
    assert WarmupScheduler(opt, epochs=3, batches_per_epoch=2, warmup_epochs=1).warmup_iters == 100
    assert WarmupScheduler(opt, epochs=3, batches_per_epoch=2, warmup_epochs=0).warmup_iters == 0

def test_warmup_drives_adam_beta1():
    opt = build_optimizer(ConvNet(), name="Adam", lr0=0.001, momentum=0.9)
    sched = WarmupScheduler(opt, epochs=5, batches_per_epoch=100, warmup_epochs=1, warmup_momentum=0.5)
    sched.step(0, 0)
    assert opt.param_groups[0]["betas"][0] == pytest.approx(0.5)
