"""gatehouse: session orchestration and permission-gated execution bridge."""

__version__ = "0.1.0"
