"""Line-delimited JSON-RPC transport and client for wallet servers."""

__all__ = ["transport", "node"]