"""
Build directive emission.

This package handles:
1. Printing link search path and link library directives for the build tool
2. Staging dynamic libraries into the runtime output directory
"""

from .emitter import BuildDirectiveEmitter

__all__ = ["BuildDirectiveEmitter"]
