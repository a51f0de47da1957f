"""Data contracts for type safety and documentation."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import StrEnum
from pathlib import Path
from typing import Any, Optional


class JobStatus(StrEnum):
    """Lifecycle states of a scrape job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Allowed forward transitions; terminal states have none.
JOB_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class LoopState(StrEnum):
    """States of the per-site extraction loop."""

    SCROLLING = "scrolling"
    SCANNING_CARDS = "scanning_cards"
    VISITING_CARD = "visiting_card"
    COLLECTING = "collecting"
    RETRYING = "retrying"
    DONE = "done"


@dataclass(frozen=True)
class DelayPolicy:
    """Pacing between browser actions, in milliseconds.

    Each pause draws a uniform random value from its range so the session
    does not act on a fixed rhythm.
    """

    step_min_ms: int = 2000
    step_max_ms: int = 4000
    settle_min_ms: int = 5000
    settle_max_ms: int = 7000
    short_min_ms: int = 300
    short_max_ms: int = 1000
    typing_delay_ms: int = 120

    @classmethod
    def none(cls) -> "DelayPolicy":
        """Policy without any waiting (tests and dry runs)."""
        return cls(0, 0, 0, 0, 0, 0, 0)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "DelayPolicy":
        if not data:
            return cls()
        known = {k: int(v) for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class AutomationConfig:
    """Configuration for the automation run."""

    output_dir: Path = Path("./output")
    timeout_ms: int = 30000
    headless: bool = True
    max_concurrent: int = 1
    min_products: int = 20
    max_rounds: int = 3
    job_timeout_s: float = 900
    product_wait_ms: int = 20000
    price_wait_ms: int = 10000
    detail_wait_ms: int = 8000
    save_artifacts: bool = True
    block_resources: bool = True
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    viewport_width: int = 1920
    viewport_height: int = 1080
    locale: str = "en-US"
    error_banner_selector: str = "xpath=//*[contains(text(), 'Something went wrong')]"
    delays: DelayPolicy = field(default_factory=DelayPolicy)


@dataclass(frozen=True)
class SiteConfig:
    """Configuration for one grocery site.

    Selectors are opaque strings owned by the site; the extraction core only
    looks them up by role (``product_card``, ``location_input`` ...).
    """

    key: str
    display_name: str
    base_url: str
    search_url: str
    home_url: Optional[str] = None
    enabled: bool = True
    selectors: dict[str, Any] = field(default_factory=dict)
    detail_url_patterns: tuple[str, ...] = ()
    location_confirmed_url_parts: tuple[str, ...] = ()

    def selector(self, role: str, default: Optional[str] = None) -> Optional[str]:
        """Get the selector configured for a role."""
        value = self.selectors.get(role, default)
        if isinstance(value, list):
            return ", ".join(value)
        return value

    def selector_list(self, role: str) -> list[str]:
        """Get a role whose selectors are tried in order."""
        value = self.selectors.get(role)
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return list(value)


@dataclass(frozen=True)
class CardSummary:
    """Fields parsed from a product card's markup."""

    name: str
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    quantity: Optional[str] = None
    delivery_time: Optional[str] = None
    badges: Optional[tuple[str, ...]] = None
    description: Optional[str] = None
    is_out_of_stock: bool = False


@dataclass(frozen=True)
class PriceElement:
    """Snapshot of one visible, currency-bearing element on a page.

    ``struck_text`` holds the text of crossed-out descendants, so a value
    repeated from a struck child keeps its MRP meaning in the parent.
    """

    text: str
    class_name: str = ""
    font_size: float = 16.0
    is_strikethrough: bool = False
    in_detail_region: bool = False
    struck_text: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PriceElement":
        return cls(
            text=data.get("text") or "",
            class_name=data.get("className") or "",
            font_size=float(data.get("fontSize") or 16.0),
            is_strikethrough=bool(data.get("isStrikethrough")),
            in_detail_region=bool(data.get("inDetailRegion")),
            struck_text=data.get("struckText") or "",
        )


@dataclass(frozen=True)
class PriceCandidate:
    """A currency-marked number considered during price disambiguation."""

    value: Decimal
    is_strikethrough: bool
    priority: int
    source_text: str


@dataclass(frozen=True)
class PriceResult:
    """Outcome of price disambiguation for one product page."""

    price: Optional[Decimal] = None
    mrp: Optional[Decimal] = None

    @property
    def is_empty(self) -> bool:
        return self.price is None and self.mrp is None


def compute_discount(
    price: Optional[Decimal], mrp: Optional[Decimal]
) -> tuple[Optional[int], Optional[Decimal]]:
    """Derive (discount percent, discount amount) from price and MRP.

    Both are None unless price and MRP are known and MRP exceeds price.
    Percent is rounded half up.
    """
    if price is None or mrp is None or mrp <= price:
        return None, None
    amount = mrp - price
    percent = (amount / mrp * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(percent), amount


def _number(value: Optional[Decimal]) -> Optional[float | int]:
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


@dataclass(frozen=True)
class Product:
    """A priced product record extracted from one site."""

    name: str
    price: Optional[Decimal] = None
    mrp: Optional[Decimal] = None
    discount: Optional[int] = None
    discount_amount: Optional[Decimal] = None
    is_out_of_stock: bool = False
    image_url: Optional[str] = None
    product_url: Optional[str] = None
    quantity: Optional[str] = None
    delivery_time: Optional[str] = None
    badges: Optional[tuple[str, ...]] = None
    description: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to the JSON wire shape."""
        return {
            "name": self.name,
            "price": _number(self.price),
            "mrp": _number(self.mrp),
            "discount": self.discount,
            "discountAmount": _number(self.discount_amount),
            "isOutOfStock": self.is_out_of_stock,
            "imageUrl": self.image_url,
            "productUrl": self.product_url,
            "description": self.description,
            "quantity": self.quantity,
            "deliveryTime": self.delivery_time,
            "badges": list(self.badges) if self.badges else None,
        }


@dataclass(frozen=True)
class SiteResult:
    """Result of running the extraction pipeline against one site."""

    site: str
    success: bool
    duration_ms: int
    products: tuple[Product, ...] = ()
    error: Optional[str] = None
    artifact_path: Optional[str] = None

    @property
    def product_count(self) -> int:
        return len(self.products)

    @classmethod
    def failed(cls, site: str, error: str, duration_ms: int = 0) -> "SiteResult":
        return cls(site=site, success=False, duration_ms=duration_ms, error=error)

    def to_dict(self) -> dict:
        return {
            "site": self.site,
            "success": self.success,
            "durationMs": self.duration_ms,
            "productCount": self.product_count,
            "products": [p.to_dict() for p in self.products],
            "error": self.error,
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Job:
    """One asynchronous (product, location) comparison request.

    Mutated only by the job manager on behalf of the job's own task.
    """

    id: str
    product: str
    location: str
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    site_results: list[SiteResult] = field(default_factory=list)
    error: Optional[str] = None

    def transition(self, new_status: JobStatus) -> None:
        """Move to a new status, refusing regressions.

        Raises:
            ValueError: If the transition is not a forward step.
        """
        if new_status not in JOB_TRANSITIONS[self.status]:
            raise ValueError(
                f"Invalid job transition {self.status} -> {new_status} for job {self.id}"
            )
        self.status = new_status
        if new_status == JobStatus.PROCESSING:
            self.started_at = utc_now()
        elif new_status.is_terminal:
            self.ended_at = utc_now()

    def summary(self) -> dict:
        """Aggregate counts over the site results."""
        success_count = sum(1 for r in self.site_results if r.success)
        duration_ms = None
        if self.ended_at is not None:
            duration_ms = int((self.ended_at - self.created_at).total_seconds() * 1000)
        return {
            "totalWebsites": len(self.site_results),
            "successCount": success_count,
            "failedCount": len(self.site_results) - success_count,
            "totalProducts": sum(r.product_count for r in self.site_results),
            "totalDurationMs": duration_ms,
        }

    def to_dict(self) -> dict:
        """Convert to the job status document served to polling clients."""
        data = {
            "jobId": self.id,
            "status": str(self.status),
            "product": self.product,
            "location": self.location,
            "createdAt": self.created_at.isoformat(),
            "siteResults": [r.to_dict() for r in self.site_results],
            "error": self.error,
        }
        if self.status.is_terminal:
            data["summary"] = self.summary()
        return data
