import pytest
import torch

from scene.index_mapping import IndexMapping


def test_restructure_mapping_keeps_prefix_then_children():
    keep = torch.tensor([True, False, True, True])
    parents = torch.tensor([3, 1, 1])
    mapping = IndexMapping.from_restructure(keep, parents)

    assert mapping.old_count == 4
    assert mapping.new_count == 6
    assert mapping.sources.tolist() == [0, 2, 3, 3, 1, 1]
    assert mapping.counts().tolist() == [1, 2, 1, 2]
    assert mapping.removed_mask().tolist() == [False, False, False, False]
    assert mapping.targets(1).tolist() == [4, 5]


def test_removed_rows_have_no_target():
    mapping = IndexMapping.from_keep_mask(torch.tensor([True, False, True]))
    assert mapping.removed_mask().tolist() == [False, True, False]
    assert mapping.targets(1).numel() == 0


def test_apply_gathers_rows():
    mapping = IndexMapping(3, torch.tensor([2, 0, 0]))
    values = torch.tensor([[10.0], [20.0], [30.0]])
    assert mapping.apply(values).squeeze(-1).tolist() == [30.0, 10.0, 10.0]


def test_apply_rejects_wrong_length():
    mapping = IndexMapping.identity(3)
    with pytest.raises(RuntimeError):
        mapping.apply(torch.zeros(4, 2))


def test_compose_matches_sequential_application():
    first = IndexMapping.from_restructure(torch.tensor([True, True, False]), torch.tensor([0]))
    second = IndexMapping.from_keep_mask(torch.tensor([False, True, True]))
    values = torch.arange(3.0)

    composed = first.compose(second)
    assert torch.equal(composed.apply(values), second.apply(first.apply(values)))
    assert composed.old_count == 3


def test_compose_rejects_unchained_mappings():
    with pytest.raises(RuntimeError):
        IndexMapping.identity(3).compose(IndexMapping.identity(4))
