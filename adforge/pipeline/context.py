"""
Stage context for maintaining per-request state across enrichment stages.

The executor owns one StageContext per request. It is never shared across
requests and is discarded once persistence completes.
"""

import datetime
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field

from ..models import ProductFacts, BrandVoice, TemplateDirectives

logger = logging.getLogger(__name__)


@dataclass
class StageContext:
    """
    Append-only bag of supplementary data gathered before prompt assembly.

    Each enrichment stage may add a field or leave it absent. A field written
    by an earlier stage is never replaced or removed.
    """

    request_id: str = ""

    # Enrichment results
    products: Optional[List[ProductFacts]] = None
    brand: Optional[BrandVoice] = None
    template: Optional[TemplateDirectives] = None

    # Bookkeeping
    degraded_stages: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        """Add a log message with timestamp."""
        timestamp = datetime.datetime.now().strftime("%H:%M:%S.%f")[:-3]
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(f"[{self.request_id}] {message}")

    def _set_once(self, name: str, value: Any) -> bool:
        if value is None:
            return False
        if getattr(self, name) is not None:
            self.log(f"WARNING: '{name}' already present in context; keeping the earlier value")
            return False
        setattr(self, name, value)
        return True

    def add_products(self, products: Optional[List[ProductFacts]]) -> bool:
        if not products:
            return False
        return self._set_once("products", list(products))

    def add_brand(self, brand: Optional[BrandVoice]) -> bool:
        return self._set_once("brand", brand)

    def add_template(self, template: Optional[TemplateDirectives]) -> bool:
        return self._set_once("template", template)

    def mark_degraded(self, stage_name: str) -> None:
        if stage_name not in self.degraded_stages:
            self.degraded_stages.append(stage_name)

    @property
    def has_brand(self) -> bool:
        return self.brand is not None

    @property
    def has_products(self) -> bool:
        return bool(self.products)

    @property
    def has_template(self) -> bool:
        return self.template is not None

    @property
    def primary_product(self) -> Optional[ProductFacts]:
        return self.products[0] if self.products else None

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict view of the enrichment data (for prompts and debugging)."""
        return {
            "products": [p.model_dump() for p in self.products] if self.products else None,
            "brand": self.brand.model_dump() if self.brand else None,
            "template": self.template.model_dump() if self.template else None,
            "degraded_stages": list(self.degraded_stages),
        }
