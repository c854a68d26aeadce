"""The blob store interface, store implementations and composable store layers."""

__all__ = [
    "base",
    "memory",
    "singleflight",
    "caching",
    "ittt",
    "speedwalk",
    "disk",
    "gcache",
    "httpstore",
    "cloudfront",
]