"""
Tests for the TaskAlignedAssigner.
"""
import pytest
import torch

from utils.assigner import TaskAlignedAssigner
from tests.config import DEVICE

@pytest.fixture(scope='module')
def shared_tensors():
    """A random batch with one padded GT slot per image."""
    g = torch.Generator().manual_seed(0)
    B, N, C, M = 2, 100, 5, 4
    imgsz = 320
    pred_scores = torch.rand(B, N, C, generator=g)
    xy = torch.rand(B, N, 2, generator=g) * imgsz
    pred_bboxes = torch.cat((xy, xy + torch.rand(B, N, 2, generator=g) * 100 + 1), -1)
    anc_points = torch.rand(N, 2, generator=g) * imgsz
    gt_labels = torch.randint(0, C, (B, M, 1), generator=g)
    gxy = torch.rand(B, M, 2, generator=g) * imgsz * 0.5
    gt_bboxes = torch.cat((gxy, gxy + torch.rand(B, M, 2, generator=g) * 150 + 20), -1)
    mask_gt = torch.ones(B, M, 1)
    mask_gt[:, -1] = 0.0
    tensors = {
        "pd_scores": pred_scores,
        "pd_bboxes": pred_bboxes,
        "anc_points": anc_points,
        "gt_labels": gt_labels,
        "gt_bboxes": gt_bboxes,
        "mask_gt": mask_gt,
    }
    return {k: v.to(DEVICE) for k, v in tensors.items()}

def _run(assigner, t):
    return assigner(
        t["pd_scores"], t["pd_bboxes"], t["anc_points"], t["gt_labels"], t["gt_bboxes"], t["mask_gt"]
    )

def test_assigner_output_shapes(shared_tensors):
    out = _run(TaskAlignedAssigner(num_classes=5), shared_tensors)
    B, N, C = shared_tensors["pd_scores"].shape
    assert out["fg_mask"].shape == (B, N) and out["fg_mask"].dtype == torch.bool
    assert out["target_gt"].shape == (B, N)
    assert out["target_labels"].shape == (B, N)
    assert out["target_bboxes"].shape == (B, N, 4)
    assert out["target_scores"].shape == (B, N, C)
    assert not torch.isnan(out["target_scores"]).any()

def test_trivial_batch_single_anchor_inside_gt():
    anc_points = torch.tensor([[0.5, 0.5], [1.5, 0.5]], device=DEVICE)
    gt_bboxes = torch.tensor([[[0.0, 0.0, 1.0, 1.0]]], device=DEVICE)
    gt_labels = torch.zeros(1, 1, 1, dtype=torch.long, device=DEVICE)
    mask_gt = torch.ones(1, 1, 1, device=DEVICE)
    pd_scores = torch.tensor([[[0.9], [0.1]]], device=DEVICE)
    pd_bboxes = gt_bboxes.expand(1, 2, 4).clone()

    assigner = TaskAlignedAssigner(num_classes=1, topk=10, alpha=0.5, beta=6.0)
    out = assigner(pd_scores, pd_bboxes, anc_points, gt_labels, gt_bboxes, mask_gt)

    assert out["fg_mask"].tolist() == [[True, False]]
    assert out["target_labels"][0, 0].item() == 0
    assert torch.allclose(out["target_bboxes"][0, 0], torch.tensor([0.0, 0.0, 1.0, 1.0], device=DEVICE))
    assert out["target_scores"][0, 0, 0].item() == pytest.approx(1.0, abs=1e-4)
    assert out["target_scores"][0, 1].sum().item() == 0.0

def test_assigner_is_deterministic(shared_tensors):
    assigner = TaskAlignedAssigner(num_classes=5)
    a = _run(assigner, shared_tensors)
    b = _run(assigner, shared_tensors)
    for key in a:
        assert torch.equal(a[key], b[key]), key

def test_fg_count_matches_valid_target_gt(shared_tensors):
    out = _run(TaskAlignedAssigner(num_classes=5), shared_tensors)
    mask_gt = shared_tensors["mask_gt"][..., 0].long()
    refers_valid = torch.gather(mask_gt, 1, out["target_gt"]).bool() & out["fg_mask"]
    assert int(out["fg_mask"].sum()) == int(refers_valid.sum())
    # background anchors carry no score
    assert torch.all(out["target_scores"][~out["fg_mask"]] == 0)

def test_padded_gt_slots_have_no_influence(shared_tensors):
    assigner = TaskAlignedAssigner(num_classes=5)
    base = _run(assigner, shared_tensors)
    garbled = dict(shared_tensors)
    garbled["gt_bboxes"] = shared_tensors["gt_bboxes"].clone()
    garbled["gt_bboxes"][:, -1] = torch.tensor([0.0, 0.0, 320.0, 320.0], device=DEVICE)
    garbled["gt_labels"] = shared_tensors["gt_labels"].clone()
    garbled["gt_labels"][:, -1] = 4
    out = _run(assigner, garbled)
    assert torch.equal(base["fg_mask"], out["fg_mask"])
    assert torch.equal(base["target_scores"], out["target_scores"])

def test_all_gt_masked_returns_empty_targets(shared_tensors):
    t = dict(shared_tensors)
    t["mask_gt"] = torch.zeros_like(shared_tensors["mask_gt"])
    out = _run(TaskAlignedAssigner(num_classes=5), t)
    assert not out["fg_mask"].any()
    assert out["target_scores"].abs().sum().item() == 0.0
    assert out["target_bboxes"].abs().sum().item() == 0.0

def test_no_gt_slots_returns_empty_targets():
    pd_scores = torch.rand(1, 6, 2)
    pd_bboxes = torch.rand(1, 6, 4)
    out = TaskAlignedAssigner(num_classes=2)(
        pd_scores, pd_bboxes, torch.rand(6, 2), torch.zeros(1, 0, 1, dtype=torch.long),
        torch.zeros(1, 0, 4), torch.zeros(1, 0, 1)
    )
    assert out["fg_mask"].shape == (1, 6) and not out["fg_mask"].any()

def test_topk_limits_positives_per_gt():
    anc = torch.stack(torch.meshgrid(torch.arange(10.0), torch.arange(10.0), indexing="xy"), -1).view(-1, 2) + 0.5
    N = anc.shape[0]
    gt_bboxes = torch.tensor([[[0.0, 0.0, 10.0, 10.0]]])
    pd_bboxes = gt_bboxes.expand(1, N, 4).clone()
    pd_scores = torch.rand(1, N, 1, generator=torch.Generator().manual_seed(1))
    out = TaskAlignedAssigner(num_classes=1, topk=7)(
        pd_scores, pd_bboxes, anc, torch.zeros(1, 1, 1, dtype=torch.long), gt_bboxes, torch.ones(1, 1, 1)
    )
    assert int(out["fg_mask"].sum()) == 7
    chosen = out["fg_mask"][0]
    assert pd_scores[0, chosen, 0].min() >= pd_scores[0, ~chosen, 0].max()

def test_overlapping_gts_resolve_to_highest_iou():
    anc = torch.tensor([[5.0, 5.0]])
    gt_bboxes = torch.tensor([[[0.0, 0.0, 10.0, 10.0], [4.0, 4.0, 6.0, 6.0]]])
    gt_labels = torch.tensor([[[0], [1]]])
    pd_bboxes = torch.tensor([[[4.0, 4.0, 6.5, 6.5]]])
    pd_scores = torch.tensor([[[0.5, 0.5]]])
    out = TaskAlignedAssigner(num_classes=2)(pd_scores, pd_bboxes, anc, gt_labels, gt_bboxes, torch.ones(1, 2, 1))
    assert out["fg_mask"][0, 0]
    assert out["target_gt"][0, 0].item() == 1
    assert out["target_labels"][0, 0].item() == 1
    assert out["target_scores"][0, 0, 0].item() == 0.0
