"""
Small convolutional network used by the tests.
"""

import torch.nn as nn


class TinyConvNet(nn.Module):
    """
    conv1 -> conv2 -> fc on square single-channel images.

    Padding keeps the spatial size, so fc reads `channels[1] * image_size**2`
    inputs and each conv2 filter feeds `image_size**2` consecutive columns
    of fc.
    """

    def __init__(self, image_size: int = 8, channels: tuple = (4, 8), output_dim: int = 4, groups: int = 1):
        super(TinyConvNet, self).__init__()

        self.conv1 = nn.Conv2d(1, channels[0], kernel_size=3, padding=1)
        self.relu1 = nn.ReLU()
        self.conv2 = nn.Conv2d(channels[0], channels[1], kernel_size=3, padding=1, groups=groups)
        self.relu2 = nn.ReLU()
        self.fc = nn.Linear(channels[1] * image_size * image_size, output_dim)

    def forward(self, x):
        x = self.relu1(self.conv1(x))
        x = self.relu2(self.conv2(x))
        return self.fc(x.view(x.size(0), -1))
