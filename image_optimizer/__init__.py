"""Image Optimizer service."""
