"""HTTP and TCP peer servers for serving blobs, with the peer client and peer store."""

__all__ = ["httpserver", "peerserver", "peerclient", "peerstore"]