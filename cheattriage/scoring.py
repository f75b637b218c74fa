"""
Virtualization evidence scoring.

Single indicators are noisy (a VirtualBox host adapter carries a VirtualBox
MAC, a leftover registry key survives an uninstall), so a product is only
reported when its indicators span at least `threshold` distinct categories.
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Iterable


class Category(str, Enum):
    HARDWARE = "hardware"
    NETWORK = "network"
    GUEST_TOOLS = "guest tools"
    DRIVER = "driver"
    REGISTRY = "registry"
    ENVIRONMENT = "environment"


@dataclass(frozen=True)
class Indicator:
    product: str
    category: Category
    detail: str


@dataclass(frozen=True)
class Detection:
    product: str
    categories: frozenset[Category]
    indicators: tuple[Indicator, ...]

    def lines(self) -> list[str]:
        out = [f"[VM DETECTED] {self.product} - {len(self.indicators)} indicators found:"]
        for ind in self.indicators:
            out.append(f"  - {ind.category.value.title()}: {ind.detail}")
        return out


def score_indicators(indicators: Iterable[Indicator], threshold: int = 2) -> list[Detection]:
    by_product: dict[str, list[Indicator]] = defaultdict(list)
    for ind in indicators:
        if ind not in by_product[ind.product]:
            by_product[ind.product].append(ind)

    detections = []
    for product, items in by_product.items():
        categories = frozenset(i.category for i in items)
        if len(categories) >= threshold:
            detections.append(Detection(product, categories, tuple(items)))
    return detections
