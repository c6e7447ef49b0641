"""Loop closure detection and drift correction.

Key components:
- VisualVocabulary: Bag of Visual Words for image similarity
- PlaceDatabase: Database of visited places
- GeometricVerifier: Matching + PnP verification of candidates
- PoseGraph: Global pose optimization
- LoopCloser: Main detection and correction pipeline
"""

from .geometric_verification import GeometricVerifier, VerificationResult
from .loop_closer import LoopCloser
from .place_recognition import PlaceDatabase, PlaceEntry, QueryResult
from .pose_graph import PoseEdge, PoseGraph, PoseGraphResult
from .vocabulary import VisualVocabulary

__all__ = [
    # Vocabulary
    "VisualVocabulary",
    # Place Recognition
    "PlaceDatabase",
    "PlaceEntry",
    "QueryResult",
    # Geometric Verification
    "GeometricVerifier",
    "VerificationResult",
    # Pose Graph
    "PoseGraph",
    "PoseEdge",
    "PoseGraphResult",
    # Loop Closer
    "LoopCloser",
]
