"""
Neural network models for testing regprune.
"""

from .mlp import TinyMLP
from .conv import TinyConvNet

__all__ = ['TinyMLP', 'TinyConvNet']
