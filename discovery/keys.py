"""Query key factories.

A key is a tuple ``(namespace, [kind,] *params)``. Parameter objects are frozen
into order-independent hashable values, so two structurally equal parameter
objects always produce equal keys no matter how they were built.
"""
from __future__ import annotations

from collections.abc import Mapping
from typing import Hashable, Iterable, Optional, Tuple

from pydantic import BaseModel

from .schemas import MapBounds, MapFilters, NearbyRoomsParams, NearbySchoolsParams, SchoolRoomsParams, SearchSchoolsParams
from .models import SchoolType

QueryKey = Tuple[Hashable, ...]


def freeze(value: object) -> Hashable:
    """Return a hashable value with structural equality semantics.

    Mappings and models become frozensets of items (``None`` fields dropped, so
    an omitted optional filter equals an explicit ``None``), sequences become
    tuples.
    """

    if isinstance(value, BaseModel):
        value = value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, Mapping):
        return frozenset((key, freeze(item)) for key, item in value.items() if item is not None)
    if isinstance(value, (list, tuple)):
        return tuple(freeze(item) for item in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(freeze(item) for item in value)
    return value  # type: ignore[return-value]


def key_matches(key: QueryKey, prefix: Iterable[Hashable]) -> bool:
    prefix = tuple(prefix)
    return key[: len(prefix)] == prefix


class NearbySchoolsKeys:
    all: QueryKey = ("nearbySchools",)

    def list(self, params: NearbySchoolsParams) -> QueryKey:
        return (*self.all, freeze(params))


class AllSchoolsKeys:
    all: QueryKey = ("allSchools",)

    def for_map(self, types: Optional[Iterable[SchoolType]] = None) -> QueryKey:
        frozen = None if types is None else tuple(sorted(SchoolType(t).value for t in types))
        return (*self.all, "map", frozen)


class SchoolRoomsKeys:
    all: QueryKey = ("schoolRooms",)

    def by_school(self, school_id: str) -> QueryKey:
        return (*self.all, school_id)

    def list(self, params: SchoolRoomsParams) -> QueryKey:
        return (*self.by_school(params.school_id), freeze(params))


class SearchSchoolsKeys:
    all: QueryKey = ("searchSchools",)

    def search(self, params: SearchSchoolsParams) -> QueryKey:
        return (*self.all, freeze(params))


class MapRoomsKeys:
    all: QueryKey = ("mapRooms",)

    def bounds(self, bounds: MapBounds, filters: Optional[MapFilters] = None) -> QueryKey:
        return (*self.all, "bounds", freeze(bounds), freeze(filters) or None)

    def nearby(self, params: NearbyRoomsParams) -> QueryKey:
        return (*self.all, "nearby", freeze(params))


nearby_schools_keys = NearbySchoolsKeys()
all_schools_keys = AllSchoolsKeys()
school_rooms_keys = SchoolRoomsKeys()
search_schools_keys = SearchSchoolsKeys()
map_rooms_keys = MapRoomsKeys()
