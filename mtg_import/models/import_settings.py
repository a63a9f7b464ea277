"""Impostazioni di import per tenant. Nessuna riga = valori di default."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Integer, String

from mtg_import.core.database import Base, utcnow

DEFAULT_IMPORTABLE_SET_TYPES = [
    "core",
    "expansion",
    "masters",
    "draft_innovation",
    "commander",
    "starter",
    "funny",
]

class ImportSettings(Base):
    __tablename__ = "import_settings"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    tenant_id = Column(String(255), nullable=False, unique=True, index=True)

    channel_slugs = Column(JSON, nullable=False, default=lambda: ["default-channel"])
    product_type_slug = Column(String(255), nullable=False, default="mtg-card")
    category_slug = Column(String(255), nullable=False, default="mtg-singles")
    warehouse_slugs = Column(JSON, nullable=False, default=list)

    condition_nm = Column(Float, nullable=False, default=1.0)
    condition_lp = Column(Float, nullable=False, default=0.9)
    condition_mp = Column(Float, nullable=False, default=0.75)
    condition_hp = Column(Float, nullable=False, default=0.5)
    condition_dmg = Column(Float, nullable=False, default=0.25)

    default_price = Column(Float, nullable=False, default=0.25)
    cost_price_ratio = Column(Float, nullable=False, default=0.5)

    is_published = Column(Boolean, nullable=False, default=True)
    visible_in_listings = Column(Boolean, nullable=False, default=True)
    is_available_for_purchase = Column(Boolean, nullable=False, default=True)
    track_inventory = Column(Boolean, nullable=False, default=False)

    physical_only = Column(Boolean, nullable=False, default=True)
    include_oversized = Column(Boolean, nullable=False, default=False)
    include_tokens = Column(Boolean, nullable=False, default=False)
    importable_set_types = Column(
        JSON, nullable=False, default=lambda: list(DEFAULT_IMPORTABLE_SET_TYPES)
    )

    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def condition_multipliers(self) -> dict[str, float]:
        return {
            "NM": self.condition_nm,
            "LP": self.condition_lp,
            "MP": self.condition_mp,
            "HP": self.condition_hp,
            "DMG": self.condition_dmg,
        }
