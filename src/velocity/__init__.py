"""Velocity: on-device Stable Diffusion model management."""

__version__ = "0.1.0"
