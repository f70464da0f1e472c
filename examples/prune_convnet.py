"""
Example script: regularization-driven filter pruning of a small ConvNet.

Trains TinyConvNet on synthetic images while RegPruner removes filters
according to a YAML configuration, then reports the resulting sparsity.

Usage:
    python examples/prune_convnet.py [--config examples/configs/tiny_convnet.yaml]
"""

import argparse
import os
import sys

import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import DataLoader, TensorDataset

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from regprune import Logger, LogLevel, RegPruner, TinyConvNet, load_config


def generate_synthetic_images(num_samples=512, image_size=8, num_classes=4):
    """
    Images whose class is decided by which quadrant is brightest.

    Returns:
        DataLoader with synthetic data
    """
    X = torch.randn(num_samples, 1, image_size, image_size)
    half = image_size // 2
    quadrants = torch.stack([
        X[:, 0, :half, :half].mean(dim=(1, 2)),
        X[:, 0, :half, half:].mean(dim=(1, 2)),
        X[:, 0, half:, :half].mean(dim=(1, 2)),
        X[:, 0, half:, half:].mean(dim=(1, 2)),
    ], dim=1)
    y = quadrants[:, :num_classes].argmax(dim=1)
    return DataLoader(TensorDataset(X, y), batch_size=32, shuffle=True)


def evaluate_model(model, dataloader):
    """Accuracy in percent."""
    model.eval()
    correct = 0
    total = 0
    with torch.no_grad():
        for inputs, targets in dataloader:
            predicted = model(inputs).argmax(dim=1)
            total += targets.size(0)
            correct += predicted.eq(targets).sum().item()
    model.train()
    return 100. * correct / total


def main():
    parser = argparse.ArgumentParser(description="Prune TinyConvNet with RegPruner")
    parser.add_argument(
        "--config",
        default=os.path.join(os.path.dirname(__file__), "configs", "tiny_convnet.yaml"),
        help="YAML pruning configuration",
    )
    parser.add_argument("--epochs", type=int, default=30)
    parser.add_argument("--log-level", default="INFO", help="ERROR, WARNING, INFO, MEMORY or DEBUG")
    parser.add_argument("--log-file", action="store_true", help="Also write a log file under logs/")
    args = parser.parse_args()

    logger = Logger(
        program_name='prune_convnet',
        level=LogLevel.from_name(args.log_level),
        enable_file_logging=args.log_file,
    )

    logger.info("=" * 70)
    logger.info("regprune: regularization-driven filter pruning")
    logger.info("=" * 70)

    config = load_config(args.config)
    torch.manual_seed(0)
    loader = generate_synthetic_images()
    model = TinyConvNet(image_size=8, channels=(8, 16), output_dim=4)
    # decay is applied by the pruner
    optimizer = optim.SGD(model.parameters(), lr=0.05, momentum=0.9, weight_decay=0)
    pruner = RegPruner(model, optimizer, config)
    loss_fn = nn.CrossEntropyLoss()

    for epoch in range(args.epochs):
        total_loss = 0
        for inputs, targets in loader:
            total_loss += pruner.train_step(inputs, targets, loss_fn)
        accuracy = evaluate_model(model, loader)
        logger.info(
            f"Epoch {epoch + 1}/{args.epochs}: Loss: {total_loss / len(loader):.4f}, "
            f"Accuracy: {accuracy:.2f}%, Sparsity: {pruner.get_sparsity():.2%}"
        )
        if pruner.all_finished:
            logger.info(f"All layers reached their prune ratio after {pruner.iteration} steps")
            break

    pruner.print_summary()
    pruner.save("prune_state.pt")
    logger.info("Pruning state saved to prune_state.pt")


if __name__ == "__main__":
    main()
