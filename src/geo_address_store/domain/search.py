"""Domain models for address search results."""

from pydantic import BaseModel, ConfigDict

from geo_address_store.domain.model import AddressRecord


class SearchHit(BaseModel):
    """Value object for one ranked full-text match.

    Rank is the FTS5 bm25 score: lower is better, so hits are ordered ascending.
    """

    model_config = ConfigDict(frozen=True)

    address_id: int
    street: str
    house_number: str
    city: str
    lon: float
    lat: float
    street_highlight: str
    house_number_highlight: str
    city_highlight: str
    rank: float

    @property
    def record(self) -> AddressRecord:
        return AddressRecord(
            street=self.street,
            house_number=self.house_number,
            city=self.city,
            lon=self.lon,
            lat=self.lat,
        )
