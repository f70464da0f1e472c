"""
End-to-end tests for RegPruner.
"""

import copy
import os
import sys
import tempfile

import pytest
import torch
import torch.nn as nn

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from regprune import (
    ConfigurationError, DecayConfig, DecisionConfig, LayerConfig, PolicyConfig,
    ProbabilisticConfig, PruneConfig, RegPruner, TinyConvNet, TinyMLP,
)
from regprune.logger import Logger, LogLevel

logger = Logger(program_name='test_pruner', level=LogLevel.WARNING)


def mlp_config():
    return PruneConfig(
        prune_unit="Col",
        layers={"fc2": LayerConfig(prune_ratio=0.5)},
        policy=PolicyConfig(name="Reg-rank", params={"AA": 0.25}),
        decision=DecisionConfig(prune_threshold=1e-4),
    )


def make_mlp_pruner(config=None):
    torch.manual_seed(0)
    model = TinyMLP(input_dim=16, hidden_dims=(12, 8), output_dim=4)
    optimizer = torch.optim.SGD(model.parameters(), lr=0.05, momentum=0.9)
    return RegPruner(model, optimizer, config or mlp_config())


def mlp_data():
    torch.manual_seed(1)
    return torch.randn(64, 16), torch.randint(0, 4, (64,))


def test_layers_registered_in_module_order():
    pruner = make_mlp_pruner()
    assert [layer.name for layer in pruner.store] == ["fc1", "fc2", "fc3"]
    assert pruner.store[1].shape == (8, 12)
    assert pruner.store[1].prune_ratio == 0.5
    assert pruner.store[0].prune_ratio == 0.0


def test_conv_layers_are_viewed_as_matrices():
    model = TinyConvNet(image_size=8, channels=(4, 8), output_dim=4)
    pruner = RegPruner(model, config=PruneConfig(prune_unit="Row"))
    conv2 = pruner.store[1]
    assert conv2.kind == "conv"
    assert conv2.shape == (8, 36)
    assert conv2.filter_area == 9
    assert conv2.in_per_group == 4
    assert pruner.store[2].shape == (4, 512)


def test_mlp_threshold_pruning_end_to_end():
    """Reg-rank drives columns of fc2 to zero; invariants hold at every step."""
    pruner = make_mlp_pruner()
    X, y = mlp_data()
    loss_fn = nn.CrossEntropyLoss()
    handle = pruner.store.handle_of("fc2")
    state = pruner.store[handle]
    param = pruner.params[handle]

    previous = 0.0
    for _ in range(60):
        mask_before = state.mask.clone()
        loss = pruner.train_step(X, y, loss_fn)
        assert loss == loss  # not NaN

        assert state.pruned_count_col >= previous
        previous = state.pruned_count_col
        assert state.history_reg.max().item() <= pruner.config.target_reg
        assert (param.detach()[~state.mask] == 0).all()
        assert len(pruner.store.queue) == 0

        momentum = pruner.optimizer.state[param]["momentum_buffer"]
        assert (momentum[~mask_before] == 0).all()

    assert state.pruned_count_col > 0
    assert pruner.iteration == 60
    if state.is_finished:
        assert state.unit_pruned_ratio >= state.prune_ratio
    # layers without a ratio are never pruned
    assert pruner.store[0].mask.all() and pruner.store[2].mask.all()


def test_conv_probabilistic_pruning_end_to_end():
    """Pruned conv1 filters clear the matching input blocks of conv2."""
    torch.manual_seed(0)
    model = TinyConvNet(image_size=8, channels=(4, 8), output_dim=4)
    optimizer = torch.optim.SGD(model.parameters(), lr=0.01, momentum=0.9)
    config = PruneConfig(
        prune_unit="Row",
        layers={"conv1": LayerConfig(prune_ratio=0.5)},
        policy=PolicyConfig(name=None),
        decision=DecisionConfig(
            mode="probabilistic",
            probabilistic=ProbabilisticConfig(AA=0.5, curve="linear", seed=0),
        ),
    )
    pruner = RegPruner(model, optimizer, config)
    X = torch.randn(16, 1, 8, 8)
    y = torch.randint(0, 4, (16,))
    loss_fn = nn.CrossEntropyLoss()

    for _ in range(40):
        pruner.train_step(X, y, loss_fn)
        if pruner.all_finished:
            break

    conv1 = pruner.store[0]
    conv2 = pruner.store[1]
    assert conv1.is_finished
    assert conv1.pruned_count_row == 2
    assert conv1.step_mask is None
    pruned_rows = torch.nonzero(conv1.row_pruned).flatten().tolist()
    for r in pruned_rows:
        assert model.conv1.weight[r].abs().sum().item() == 0
        assert not conv2.mask[:, r * 9:(r + 1) * 9].any()
        assert model.conv2.weight[:, r].abs().sum().item() == 0
    assert conv2.pruned_count_col == pytest.approx(18.0)
    assert conv1.history_prob[~conv1.row_pruned].tolist() == [1.0, 1.0]
    assert conv1.history_prob[conv1.row_pruned].tolist() == [0.0, 0.0]


def test_snapshot_restores_identical_masks():
    pruner = make_mlp_pruner()
    X, y = mlp_data()
    loss_fn = nn.CrossEntropyLoss()
    for _ in range(30):
        pruner.train_step(X, y, loss_fn)

    model2 = copy.deepcopy(pruner.model)
    restored = RegPruner(model2, torch.optim.SGD(model2.parameters(), lr=0.05), mlp_config())
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "pruner.pt")
        pruner.save(path)
        restored.load(path)

    assert restored.iteration == pruner.iteration
    for a, b in zip(pruner.store, restored.store):
        assert torch.equal(a.mask, b.mask)
        assert torch.equal(a.history_reg, b.history_reg)
        assert torch.equal(a.history_rank, b.history_rank)
        assert a.pruned_count_col == b.pruned_count_col
        assert a.finished_at_step == b.finished_at_step


def test_bias_gets_decay_only():
    """Biases take baseline decay but never the pruning term, and are not registered."""
    torch.manual_seed(0)
    model = nn.Sequential(nn.Linear(3, 2))
    config = PruneConfig(
        layers={"0": LayerConfig(prune_ratio=0.5)},
        decay=DecayConfig(weight_decay=0.1),
        policy=PolicyConfig(name="Reg-rank", params={"AA": 0.5}),
    )
    pruner = RegPruner(model, config=config)
    layer = model[0]
    assert len(pruner.store) == 1

    pruner.iteration = 1
    layer.weight.grad = torch.zeros_like(layer.weight)
    layer.bias.grad = torch.zeros_like(layer.bias)
    pruner.after_backward()

    assert torch.allclose(layer.bias.grad, 0.1 * layer.bias.detach())
    assert not torch.allclose(layer.weight.grad, 0.1 * layer.weight.detach())


def test_l1_decay_uses_sign():
    model = nn.Sequential(nn.Linear(2, 2))
    pruner = RegPruner(model, config=PruneConfig(
        policy=PolicyConfig(name=None),
        decay=DecayConfig(weight_decay=0.01, regularization_type="L1"),
    ))
    with torch.no_grad():
        model[0].weight.copy_(torch.tensor([[-2.0, 3.0], [0.5, -0.1]]))
    for p in model.parameters():
        p.grad = torch.zeros_like(p)
    pruner.after_backward()
    assert model[0].weight.grad.tolist() == pytest.approx([[-0.01, 0.01], [0.01, -0.01]])


def test_restore_from_weights():
    pruner = make_mlp_pruner()
    with torch.no_grad():
        pruner.model.fc2.weight[:, 3] = 0
    pruner.restore_from_weights()
    state = pruner.store.layers[pruner.store.handle_of("fc2")]
    assert state.pruned_count_col == pytest.approx(1.0)
    assert not state.mask[:, 3].any()


def test_weight_unit_pruned_row_clears_next_layer_input():
    torch.manual_seed(0)
    model = nn.Sequential(nn.Linear(3, 2), nn.ReLU(), nn.Linear(2, 2))
    with torch.no_grad():
        model[0].weight.copy_(torch.tensor([[1e-6] * 3, [1.0] * 3]))
        model[2].weight.fill_(1.0)
    optimizer = torch.optim.SGD(model.parameters(), lr=0.0)
    pruner = RegPruner(model, optimizer, PruneConfig(
        prune_unit="Weight",
        layers={"0": LayerConfig(prune_ratio=0.5)},
        policy=PolicyConfig(name=None),
        decision=DecisionConfig(prune_threshold=1e-3),
    ))
    X = torch.randn(8, 3)
    y = torch.randint(0, 2, (8,))
    for _ in range(2):
        pruner.train_step(X, y, nn.CrossEntropyLoss())

    assert pruner.store[0].row_pruned.tolist() == [True, False]
    assert pruner.store[0].is_finished
    assert not pruner.store[1].mask[:, 0].any()
    assert model[2].weight[:, 0].abs().sum().item() == 0
    assert model[2].weight[:, 1].tolist() == [1.0, 1.0]


def test_unknown_layer_name_rejected():
    torch.manual_seed(0)
    with pytest.raises(ConfigurationError):
        RegPruner(TinyMLP(), config=PruneConfig(layers={"fc9": LayerConfig(prune_ratio=0.5)}))


def test_unsupported_unit_for_policy_rejected():
    with pytest.raises(ConfigurationError):
        RegPruner(TinyMLP(), config=PruneConfig(prune_unit="Weight", policy=PolicyConfig(name="SSL")))


def test_train_step_requires_optimizer():
    pruner = RegPruner(TinyMLP(), config=PruneConfig())
    X, y = mlp_data()
    with pytest.raises(ConfigurationError):
        pruner.train_step(X, y, nn.CrossEntropyLoss())


def test_sparsity_reporting():
    pruner = make_mlp_pruner()
    assert pruner.get_sparsity() == 0
    with torch.no_grad():
        pruner.model.fc3.weight.zero_()
    total = sum(p.numel() for p in pruner.params.values())
    assert pruner.get_sparsity() == pytest.approx(pruner.model.fc3.weight.numel() / total)
    pruner.print_summary()


def run_all_tests():
    """Run all tests."""
    logger.info("=" * 70)
    logger.info("RegPruner Test Suite")
    logger.info("=" * 70)

    tests = [
        test_layers_registered_in_module_order,
        test_conv_layers_are_viewed_as_matrices,
        test_mlp_threshold_pruning_end_to_end,
        test_conv_probabilistic_pruning_end_to_end,
        test_snapshot_restores_identical_masks,
        test_bias_gets_decay_only,
        test_l1_decay_uses_sign,
        test_restore_from_weights,
        test_weight_unit_pruned_row_clears_next_layer_input,
        test_unknown_layer_name_rejected,
        test_unsupported_unit_for_policy_rejected,
        test_train_step_requires_optimizer,
        test_sparsity_reporting,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            logger.error(f"✗ {test.__name__} failed: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    logger.warning(f"Test Results: {passed} passed, {failed} failed")
    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
