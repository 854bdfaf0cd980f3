"""GSO segmentation, receive-side flow aggregation, TUN and UDP output queues, and WireGuard message layouts."""

__version__ = "0.1.0"