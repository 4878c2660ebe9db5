"""
SDK for Credit Guard.

Provides the provider-facing synthesis gateway.
"""

from .gateway import GridArtifact, GridRequest, SynthesisGateway, SynthesisMode

__all__ = ["GridArtifact", "GridRequest", "SynthesisGateway", "SynthesisMode"]
