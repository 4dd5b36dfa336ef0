"""
Normalized payload models per content module.

Providers turn raw upstream JSON into these shapes before anything is cached
or recorded, so every reader of a module sees the same fields.
"""

from datetime import datetime
from typing import Dict, Optional, Type

from pydantic import BaseModel, Field


class Launch(BaseModel):
    """Upcoming launch."""
    id: str
    name: str
    net: Optional[datetime] = None
    status: Optional[str] = None
    provider: Optional[str] = None
    rocket: Optional[str] = None
    pad: Optional[str] = None
    location: Optional[str] = None
    mission_description: Optional[str] = None
    image_url: Optional[str] = None


class NewsArticle(BaseModel):
    """News wire article."""
    id: str
    title: str
    url: str
    summary: str = ""
    news_site: Optional[str] = None
    published_at: Optional[datetime] = None
    image_url: Optional[str] = None


class SpaceWeatherReading(BaseModel):
    """Planetary K-index sample."""
    time_tag: datetime
    kp_index: float = Field(ge=0, le=9)
    storm_level: str = "G0"
    station_count: Optional[int] = None


class MarketSnapshot(BaseModel):
    """Quote for a space-sector security."""
    symbol: str
    name: Optional[str] = None
    price: Optional[float] = None
    change_percent: Optional[float] = None
    market_cap: Optional[float] = None
    as_of: Optional[datetime] = None


class Opportunity(BaseModel):
    """Contract or solicitation."""
    id: str
    title: str
    agency: Optional[str] = None
    opportunity_type: Optional[str] = None
    deadline: Optional[datetime] = None
    value: Optional[float] = None
    url: Optional[str] = None


MODULE_MODELS: Dict[str, Type[BaseModel]] = {
    "launches": Launch,
    "news": NewsArticle,
    "space-weather": SpaceWeatherReading,
    "market-data": MarketSnapshot,
    "opportunities": Opportunity,
}


def storm_level_for(kp_index: float) -> str:
    """NOAA geomagnetic storm scale from a K-index."""
    if kp_index >= 9:
        return "G5"
    if kp_index >= 8:
        return "G4"
    if kp_index >= 7:
        return "G3"
    if kp_index >= 6:
        return "G2"
    if kp_index >= 5:
        return "G1"
    return "G0"
