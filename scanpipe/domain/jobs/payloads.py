"""
Job Payloads

Tagged union of payloads accepted by the job registry. Raw dictionaries are
decoded once at the dispatcher boundary; worker functions always receive a
typed payload model.
"""

from typing import Annotated, Any, Iterable, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from ...core.exceptions import ValidationError


def validate_subject(value: str) -> str:
    """Normalize a subject key (wallet address) used in job ids and cache keys."""
    value = value.strip()
    if not value:
        raise ValueError("wallet cannot be empty")
    if any(char.isspace() for char in value):
        raise ValueError("wallet cannot contain whitespace")
    if any(char in value for char in "*?[]"):
        raise ValueError("wallet cannot contain glob characters")
    return value


class PayloadBase(BaseModel):
    """Common configuration for every payload kind."""

    model_config = ConfigDict(frozen=True, extra="forbid")


class WalletPayloadBase(PayloadBase):
    """Payload addressed to a single wallet."""

    wallet: str = Field(..., description="Subject key")

    @field_validator("wallet")
    @classmethod
    def validate_wallet(cls, v):
        """Validate wallet subject key."""
        return validate_subject(v)


class WalletScanPayload(WalletPayloadBase):
    """Full scan of one wallet across the requested chains."""

    kind: Literal["wallet_scan"] = "wallet_scan"
    chains: Optional[List[str]] = Field(None, description="Chains to include")
    force_refresh: bool = False


class QuickScanPayload(WalletPayloadBase):
    """Latency-sensitive scan served by the quick queue."""

    kind: Literal["quick_scan"] = "quick_scan"
    chains: Optional[List[str]] = None


class BulkScanPayload(PayloadBase):
    """Fan-out request scanning many wallets."""

    kind: Literal["bulk_scan"] = "bulk_scan"
    wallets: List[str] = Field(..., min_length=1, max_length=100)
    chains: Optional[List[str]] = None

    @field_validator("wallets")
    @classmethod
    def validate_wallets(cls, v):
        """Validate and de-duplicate wallets, keeping order."""
        seen: List[str] = []
        for wallet in v:
            wallet = validate_subject(wallet)
            if wallet not in seen:
                seen.append(wallet)
        return seen


class PositionRefreshPayload(WalletPayloadBase):
    """Invalidate and rebuild cached positions for a wallet."""

    kind: Literal["position_refresh"] = "position_refresh"
    position_id: Optional[str] = None
    chains: Optional[List[str]] = None


class PortfolioAnalyticsPayload(WalletPayloadBase):
    """Derive portfolio analytics from a wallet's scan result."""

    kind: Literal["portfolio_analytics"] = "portfolio_analytics"
    timeframe: str = Field("30d", pattern=r"^\d+[hdw]$")


JobPayload = Annotated[
    Union[
        WalletScanPayload,
        QuickScanPayload,
        BulkScanPayload,
        PositionRefreshPayload,
        PortfolioAnalyticsPayload,
    ],
    Field(discriminator="kind"),
]

_payload_adapter: TypeAdapter = TypeAdapter(JobPayload)


def decode_payload(raw: Any, accepted_kinds: Optional[Iterable[str]] = None):
    """
    Decode a raw payload into its typed model.

    Args:
        raw: Payload model instance or mapping with a ``kind`` discriminator
        accepted_kinds: Kinds the target queue accepts (None accepts all)

    Returns:
        Typed payload model

    Raises:
        ValidationError: If the payload is malformed or not accepted
    """
    if isinstance(raw, PayloadBase):
        payload = raw
    else:
        try:
            payload = _payload_adapter.validate_python(raw)
        except PydanticValidationError as e:
            errors = e.errors()
            first = errors[0] if errors else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            raise ValidationError(
                f"Invalid job payload: {first.get('msg', str(e))}",
                field=location or "payload",
            ) from e

    if accepted_kinds is not None and payload.kind not in set(accepted_kinds):
        raise ValidationError(
            f"Payload kind '{payload.kind}' is not accepted by this queue",
            field="kind",
            value=payload.kind,
        )

    return payload
