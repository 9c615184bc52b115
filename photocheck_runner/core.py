from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from PIL import Image


@dataclass
class CheckResult:
    name: str
    reasons: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.reasons


class BaseProcessor:
    name: str = "base"
    description: str = ""

    def run(self, image: Image.Image, context: Dict[str, Any]) -> CheckResult:
        raise NotImplementedError


def run_pipeline(
    image: Image.Image,
    processors: List[BaseProcessor],
    context: Dict[str, Any] | None = None,
) -> List[CheckResult]:
    """Run every processor over the same decoded image.

    Processors do not short-circuit each other: each one contributes its
    measurements and any rejection reasons. Exceptions propagate, since a
    failure here is a decode or analysis fault rather than a rejection.
    """
    ctx: Dict[str, Any] = dict(context or {})
    results: List[CheckResult] = []
    for processor in processors:
        result = processor.run(image, ctx)
        ctx[processor.name] = result.data
        results.append(result)
    return results
