def area_set(areas: str | None) -> list[str]:
    if not areas:
        return []
    return sorted({a.strip().lower() for a in areas.split(",") if a.strip()})


def normalize_areas(areas: str | None) -> str:
    """Canonical grouping key for an area list.

    ``"West-Village, east-village"`` and ``"east-village,west-village"`` both
    become ``"east-village,west-village"``. An empty result means the
    criterion has no grouping key and is left out of batching.
    """
    return ",".join(area_set(areas))
