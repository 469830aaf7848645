"""Expert Exchange Service - admin-gated request, offer, and payment workflow."""

__version__ = "0.1.0"
