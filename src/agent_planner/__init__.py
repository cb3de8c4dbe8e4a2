"""Bounded planning core for knowledge-worker task pools."""
