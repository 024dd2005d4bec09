"""Edictflow: layered governance rules with quorum approval and change enforcement."""

__version__ = "0.1.0"
