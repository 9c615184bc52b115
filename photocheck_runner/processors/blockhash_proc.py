from __future__ import annotations

from typing import Any, Dict

import imagehash
from PIL import Image

from ..core import BaseProcessor, CheckResult
from ..utils import ImageDecodeError, ensure_rgb


class BlockHashProcessor(BaseProcessor):
    name = "blockhash"
    description = (
        "Computes an average hash (each cell thresholded at the global mean luminance) "
        "over a fixed-size square raster."
    )

    def __init__(self, hash_size: int = 16, resolution: int = 256) -> None:
        self.hash_size = hash_size
        self.resolution = resolution

    def run(self, image: Image.Image, context: Dict[str, Any]) -> CheckResult:
        rgb = ensure_rgb(image)
        if rgb is None:
            raise ImageDecodeError(f"unable to normalize image mode {image.mode}")
        # Fill (not fit) so aspect ratio changes do not shift block boundaries
        square = rgb.resize((self.resolution, self.resolution), Image.Resampling.LANCZOS)
        block_hash = imagehash.average_hash(square, hash_size=self.hash_size)
        return CheckResult(name=self.name, data={"phash": str(block_hash)})
