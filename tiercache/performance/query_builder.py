"""Parametrized SQL for the entity reads served by the query optimizer.

Filter values never reach the SQL text; every value is bound through a
positional ``$n`` placeholder.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from ..core.errors import QueryBuildError


class PriceRange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min: float = Field(ge=0)
    max: float = Field(ge=0)

    @model_validator(mode="after")
    def check_order(self) -> "PriceRange":
        if self.min > self.max:
            raise ValueError("price_range.min must not exceed price_range.max")
        return self


class PropertyFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    community_id: Optional[str] = None
    property_type: Optional[str] = None
    price_range: Optional[PriceRange] = None
    bedrooms: Optional[int] = Field(default=None, ge=0)
    bathrooms: Optional[int] = Field(default=None, ge=0)
    amenities: Optional[List[str]] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: Optional[int] = Field(default=None, ge=0)


class CommunityFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    city_id: Optional[str] = None
    luxe_only: Optional[bool] = None
    with_properties: Optional[bool] = None
    with_sub_communities: Optional[bool] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: Optional[int] = Field(default=None, ge=0)


class InsightPagination(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    category: Optional[str] = None
    author_id: Optional[str] = None
    luxe_only: Optional[bool] = None
    published: Optional[bool] = None


ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_filters(
    model: Type[ModelT],
    entity: str,
    filters: Union[ModelT, Mapping[str, Any], None]
) -> ModelT:
    """Validate raw filters, turning pydantic errors into :class:`QueryBuildError`."""
    if isinstance(filters, model):
        return filters
    try:
        return model.model_validate(dict(filters or {}))
    except ValidationError as e:
        raise QueryBuildError(entity, str(e), details={"errors": e.errors()}) from e


def filters_to_dict(filters: BaseModel) -> Dict[str, Any]:
    """Only the fields that were actually supplied, for cache keys."""
    return filters.model_dump(exclude_none=True)


@dataclass
class ParametrizedQuery:
    sql: str
    params: Tuple[Any, ...]
    table: str
    query_type: str = "SELECT"

    def __str__(self) -> str:
        return self.sql


@dataclass
class _SelectBuilder:
    base: str
    table: str
    joins: List[str] = field(default_factory=list)
    conditions: List[str] = field(default_factory=list)
    params: List[Any] = field(default_factory=list)
    suffix: List[str] = field(default_factory=list)

    def bind(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def where(self, template: str, *values: Any):
        """Add a condition; each ``{}`` in ``template`` is replaced by a bound placeholder."""
        placeholders = [self.bind(value) for value in values]
        self.conditions.append(template.format(*placeholders))

    def where_clause(self) -> str:
        return f" WHERE {' AND '.join(self.conditions)}" if self.conditions else ""

    def build(self) -> ParametrizedQuery:
        sql = self.base + "".join(f" {join}" for join in self.joins) + self.where_clause()
        sql += "".join(f" {part}" for part in self.suffix)
        return ParametrizedQuery(sql=sql, params=tuple(self.params), table=self.table)


def build_property_query(filters: PropertyFilters) -> ParametrizedQuery:
    builder = _SelectBuilder(
        base=(
            "SELECT p.*, c.name AS community_name, ARRAY_AGG(DISTINCT a.name) AS amenities"
            " FROM properties p"
        ),
        table="properties",
        joins=[
            "LEFT JOIN communities c ON p.community_id = c.id",
            "LEFT JOIN property_amenities pa ON p.id = pa.property_id",
            "LEFT JOIN amenities a ON pa.amenity_id = a.id",
        ],
    )

    if filters.community_id is not None:
        builder.where("p.community_id = {}", filters.community_id)
    if filters.property_type is not None:
        builder.where("p.property_type = {}", filters.property_type)
    if filters.price_range is not None:
        builder.where("p.price >= {} AND p.price <= {}", filters.price_range.min, filters.price_range.max)
    if filters.bedrooms is not None:
        builder.where("p.bedrooms = {}", filters.bedrooms)
    if filters.bathrooms is not None:
        builder.where("p.bathrooms = {}", filters.bathrooms)
    if filters.amenities:
        builder.where("a.name = ANY({})", list(filters.amenities))

    builder.suffix.append("GROUP BY p.id, c.name")
    if filters.limit is not None:
        builder.suffix.append(f"LIMIT {builder.bind(filters.limit)}")
    if filters.offset is not None:
        builder.suffix.append(f"OFFSET {builder.bind(filters.offset)}")
    return builder.build()


def build_community_query(params: CommunityFilters) -> ParametrizedQuery:
    builder = _SelectBuilder(
        base="SELECT c.*, ci.name AS city_name FROM communities c",
        table="communities",
        joins=["LEFT JOIN cities ci ON c.city_id = ci.id"],
    )

    if params.with_properties:
        builder.joins.append("LEFT JOIN properties p ON c.id = p.community_id")
    if params.with_sub_communities:
        builder.joins.append("LEFT JOIN sub_communities sc ON c.id = sc.community_id")
    if params.city_id is not None:
        builder.where("c.city_id = {}", params.city_id)
    if params.luxe_only:
        builder.joins.append("LEFT JOIN luxe_communities lc ON c.id = lc.community_id")
        builder.conditions.append("lc.id IS NOT NULL")

    if params.limit is not None:
        builder.suffix.append(f"LIMIT {builder.bind(params.limit)}")
    if params.offset is not None:
        builder.suffix.append(f"OFFSET {builder.bind(params.offset)}")
    return builder.build()


def build_insight_queries(pagination: InsightPagination) -> Tuple[ParametrizedQuery, ParametrizedQuery]:
    """Data query and matching COUNT query sharing one WHERE clause."""
    data = _SelectBuilder(
        base=(
            "SELECT i.*, a.name AS author_name, m.url AS featured_image_url"
            " FROM insights i"
        ),
        table="insights",
        joins=[
            "LEFT JOIN authors a ON i.author_id = a.id",
            "LEFT JOIN media m ON i.featured_image_id = m.id",
        ],
    )
    count = _SelectBuilder(base="SELECT COUNT(*) AS count FROM insights i", table="insights")

    for builder in (data, count):
        if pagination.category is not None:
            builder.where("i.category = {}", pagination.category)
        if pagination.author_id is not None:
            builder.where("i.author_id = {}", pagination.author_id)
        if pagination.luxe_only:
            builder.conditions.append("i.is_luxe = true")
        if pagination.published is not None:
            builder.where("i.published = {}", pagination.published)

    offset = (pagination.page - 1) * pagination.limit
    data.suffix.append("ORDER BY i.created_at DESC")
    data.suffix.append(f"LIMIT {data.bind(pagination.limit)}")
    data.suffix.append(f"OFFSET {data.bind(offset)}")
    return data.build(), count.build()
