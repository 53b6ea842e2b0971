"""
Pairing — lifecycle of the one-shot pairing ("QR") artifact.
"""

from linkstate.pairing.manager import (
    ArtifactEncoder,
    PairingArtifact,
    PairingArtifactManager,
)

__all__ = [
    "ArtifactEncoder",
    "PairingArtifact",
    "PairingArtifactManager",
]
