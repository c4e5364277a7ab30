"""Supply-chain bottleneck scanning service."""
