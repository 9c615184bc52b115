from __future__ import annotations

from typing import Any, Dict

from PIL import Image

from ..core import BaseProcessor, CheckResult
from ..reasons import RESOLUTION_TOO_LOW


class ResolutionProcessor(BaseProcessor):
    name = "resolution"
    description = "Checks decoded width and height against configured minimums."

    def __init__(self, min_width: int, min_height: int) -> None:
        self.min_width = min_width
        self.min_height = min_height

    def run(self, image: Image.Image, context: Dict[str, Any]) -> CheckResult:
        width, height = image.size
        result = CheckResult(name=self.name, data={"width": width, "height": height})
        if width < self.min_width or height < self.min_height:
            result.reasons.append(RESOLUTION_TOO_LOW)
        return result
