"""
Small MLP used by the tests and the usage example.
"""

import torch.nn as nn


class TinyMLP(nn.Module):
    """
    A very small MLP: three Linear layers with ReLU in between, so that
    every hidden row of one layer feeds exactly one column of the next.
    """

    def __init__(self, input_dim: int = 16, hidden_dims: tuple = (12, 8), output_dim: int = 4):
        """
        Initialize tiny MLP.

        Args:
            input_dim: Input dimension
            hidden_dims: Widths of the two hidden layers
            output_dim: Output dimension
        """
        super(TinyMLP, self).__init__()

        self.fc1 = nn.Linear(input_dim, hidden_dims[0])
        self.relu1 = nn.ReLU()
        self.fc2 = nn.Linear(hidden_dims[0], hidden_dims[1])
        self.relu2 = nn.ReLU()
        self.fc3 = nn.Linear(hidden_dims[1], output_dim)

    def forward(self, x):
        """Forward pass."""
        if x.dim() > 2:
            x = x.view(x.size(0), -1)
        x = self.relu1(self.fc1(x))
        x = self.relu2(self.fc2(x))
        return self.fc3(x)

    def count_parameters(self):
        """Count total and trainable parameters."""
        total = sum(p.numel() for p in self.parameters())
        trainable = sum(p.numel() for p in self.parameters() if p.requires_grad)
        return {'total': total, 'trainable': trainable}
