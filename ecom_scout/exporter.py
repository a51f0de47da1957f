"""JSON artifact export for per-site results."""
import json
import re
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiofiles
import structlog

from .models import Product, utc_now

logger = structlog.get_logger()


def slugify(value: str) -> str:
    """Lower-case a value and reduce it to filename-safe characters."""
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "item"


def artifact_document(
    site: str,
    location: str,
    product: str,
    products: list[Product],
    timestamp: Optional[datetime] = None,
) -> dict:
    """Build the persisted result document for one site run."""
    return {
        "website": site,
        "location": location,
        "product": product,
        "timestamp": (timestamp or utc_now()).isoformat(),
        "totalProducts": len(products),
        "products": [p.to_dict() for p in products],
    }


class JSONExporter:
    """Writes one JSON document per site run under an output directory."""

    def __init__(self, output_dir: Path) -> None:
        self.output_dir = Path(output_dir)

    def artifact_path(self, site: str, location: str, product: str, timestamp: datetime) -> Path:
        stamp = timestamp.strftime("%Y%m%dT%H%M%S")
        name = f"{slugify(site)}-{slugify(location)}-{slugify(product)}-{stamp}.json"
        return self.output_dir / name

    async def export(
        self,
        site: str,
        location: str,
        product: str,
        products: list[Product],
    ) -> Path:
        """Write the artifact and return its path.

        Raises:
            OSError: If the file could not be written.
        """
        timestamp = utc_now()
        path = self.artifact_path(site, location, product, timestamp)
        path.parent.mkdir(parents=True, exist_ok=True)

        document = artifact_document(site, location, product, products, timestamp)
        async with aiofiles.open(path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(document, indent=2, ensure_ascii=False))

        logger.info("artifact_saved", site=site, path=str(path), products=len(products))
        return path
