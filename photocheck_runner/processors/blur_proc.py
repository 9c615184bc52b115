from __future__ import annotations

from typing import Any, Dict

import numpy as np
from PIL import Image

from ..core import BaseProcessor, CheckResult
from ..reasons import IMAGE_TOO_BLURRY
from ..utils import ImageDecodeError, ensure_rgb


class BlurProcessor(BaseProcessor):
    """Sharpness proxy: mean of the per-channel pixel standard deviations.

    This is a contrast heuristic, not an edge-energy (Laplacian) measure;
    flat, low-contrast frames score low.
    """

    name = "blur"
    description = "Scores sharpness from channel-wise intensity spread."

    def __init__(self, threshold: float = 10.0) -> None:
        self.threshold = threshold

    def run(self, image: Image.Image, context: Dict[str, Any]) -> CheckResult:
        rgb = ensure_rgb(image)
        if rgb is None:
            raise ImageDecodeError(f"unable to normalize image mode {image.mode}")
        pixels = np.asarray(rgb, dtype=np.float64).reshape(-1, 3)
        blur_score = float(pixels.std(axis=0).mean())
        result = CheckResult(name=self.name, data={"blur_score": blur_score})
        if blur_score < self.threshold:
            result.reasons.append(IMAGE_TOO_BLURRY)
        return result
