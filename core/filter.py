from config import settings
from db.models import Criterion, Listing, StabilizationStatus


def matches_price_filter(listing: Listing, criterion: Criterion) -> bool:
    if criterion.min_price is not None and listing.price < criterion.min_price:
        return False
    if criterion.max_price is not None and listing.price > criterion.max_price:
        return False
    return True


def matches_bedroom_filter(listing: Listing, criterion: Criterion) -> bool:
    if criterion.min_beds is None and criterion.max_beds is None:
        return True
    # Unknown size never satisfies a bound.
    if listing.bedrooms is None:
        return False
    if criterion.min_beds is not None and listing.bedrooms < criterion.min_beds:
        return False
    if criterion.max_beds is not None and listing.bedrooms > criterion.max_beds:
        return False
    return True


def matches_bathroom_filter(listing: Listing, criterion: Criterion) -> bool:
    if criterion.min_baths is None:
        return True
    return listing.bathrooms is not None and listing.bathrooms >= criterion.min_baths


def matches_fee_filter(listing: Listing, criterion: Criterion) -> bool:
    return listing.no_fee or not criterion.no_fee


def is_rent_stabilized(listing: Listing, threshold: float | None = None) -> bool:
    threshold = settings.rent_stabilized_threshold if threshold is None else threshold
    if listing.stabilization_status == StabilizationStatus.CONFIRMED:
        return True
    if listing.stabilization_status == StabilizationStatus.PROBABLE:
        return (listing.stabilization_probability or 0.0) >= threshold
    return False


def matches_stabilization_filter(listing: Listing, criterion: Criterion) -> bool:
    if not criterion.filter_rent_stabilized:
        return True
    return is_rent_stabilized(listing)


def apply_filters(listing: Listing, criterion: Criterion) -> bool:
    return (
        matches_price_filter(listing, criterion)
        and matches_bedroom_filter(listing, criterion)
        and matches_bathroom_filter(listing, criterion)
        and matches_fee_filter(listing, criterion)
        and matches_stabilization_filter(listing, criterion)
    )


def filter_listings(listings: list[Listing], criterion: Criterion) -> list[Listing]:
    return [item for item in listings if apply_filters(item, criterion)]
