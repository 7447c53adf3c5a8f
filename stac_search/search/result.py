"""
Search result envelope.

Every backend answers with an :class:`ItemCollection`: the returned items,
match and return counts, and ``next``/``prev`` links whose tokens resume
the search.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

GEOJSON_MEDIA_TYPE = "application/geo+json"


class Link(BaseModel):
    """A continuation link; the router fills in ``href``."""

    rel: str
    token: str
    type: str = GEOJSON_MEDIA_TYPE
    href: Optional[str] = None


class ItemError(BaseModel):
    """A stored item excluded from the result because it could not be read."""

    item_id: str
    collection: Optional[str] = None
    message: str


class SearchContext(BaseModel):
    """Counts describing one page."""

    returned: int
    matched: Optional[int] = None
    limit: int


class ItemCollection(BaseModel):
    """One page of search results."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["FeatureCollection"] = "FeatureCollection"
    features: List[Dict[str, Any]] = Field(default_factory=list)
    number_returned: int = Field(0, alias="numberReturned")
    number_matched: Optional[int] = Field(None, alias="numberMatched")
    context: SearchContext
    links: List[Link] = Field(default_factory=list)
    errors: List[ItemError] = Field(default_factory=list)

    @classmethod
    def assemble(
        cls,
        features: List[Dict[str, Any]],
        limit: int,
        matched: Optional[int] = None,
        next_token: Optional[str] = None,
        prev_token: Optional[str] = None,
        errors: Optional[List[ItemError]] = None,
    ) -> "ItemCollection":
        """
        Build a page from its parts.

        Args:
            features: Item mappings in result order
            limit: Limit used for the page
            matched: Total number of matching items, when known
            next_token: Token of the following page, if any
            prev_token: Token of the preceding page, if any
            errors: Items excluded because they could not be read

        Returns:
            The result envelope
        """
        links = []
        if next_token:
            links.append(Link(rel="next", token=next_token))
        if prev_token:
            links.append(Link(rel="prev", token=prev_token))
        return cls(
            features=features,
            number_returned=len(features),
            number_matched=matched,
            context=SearchContext(returned=len(features), matched=matched, limit=limit),
            links=links,
            errors=errors or [],
        )

    def _token(self, rel: str) -> Optional[str]:
        for link in self.links:
            if link.rel == rel:
                return link.token
        return None

    @property
    def next_token(self) -> Optional[str]:
        return self._token("next")

    @property
    def prev_token(self) -> Optional[str]:
        return self._token("prev")

    @property
    def ids(self) -> List[str]:
        """Ids of the returned items, in order."""
        return [feature.get("id") for feature in self.features]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the wire field names, omitting unset optional values."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        if not self.errors:
            data.pop("errors", None)
        return data
