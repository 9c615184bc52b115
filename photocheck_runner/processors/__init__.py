from .resolution import ResolutionProcessor
from .blockhash_proc import BlockHashProcessor
from .blur_proc import BlurProcessor
from .faces_proc import FaceProcessor

__all__ = [
    "ResolutionProcessor",
    "BlockHashProcessor",
    "BlurProcessor",
    "FaceProcessor",
]
