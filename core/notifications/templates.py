from html import escape

from db.models import Criterion, Listing, StabilizationStatus

SMS_SEGMENT = 160


def _num(value: float | int | None) -> str:
    if value is None:
        return "?"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def _place(listing: Listing) -> str:
    return listing.neighborhood or "NYC"


def format_sms(listing: Listing) -> str:
    head = f"New rental in {listing.neighborhood}!" if listing.neighborhood else "New rental!"
    details = f"${listing.price:,}/mo | {_num(listing.bedrooms)}bd {_num(listing.bathrooms)}ba"
    tail = f"\n{details}\n\nView: {listing.url}"

    address = listing.address
    room = SMS_SEGMENT - len(head) - len(tail) - 1
    if len(address) > room:
        address = address[: max(room - 3, 0)].rstrip() + "..."
    return f"{head}\n{address}{tail}"


def format_email_subject(listing: Listing) -> str:
    return (
        f"New Rental Match: {_num(listing.bedrooms)}BR in {_place(listing)} - "
        f"${listing.price:,}"
    )


def _stabilization_line(listing: Listing) -> str:
    if listing.stabilization_status == StabilizationStatus.CONFIRMED:
        return "Likely rent stabilized"
    if listing.stabilization_status == StabilizationStatus.PROBABLE:
        return f"Possibly rent stabilized ({(listing.stabilization_probability or 0):.0%})"
    return ""


def format_email_html(listing: Listing, criterion: Criterion) -> str:
    parts = [
        "<html><body style=\"font-family: Arial, sans-serif; color: #1f2937;\">",
        "<h1 style=\"font-size: 22px;\">New Rental Match!</h1>",
        f"<p>A new listing matches your alert <strong>{escape(criterion.name)}</strong>.</p>",
    ]
    if listing.image_url:
        parts.append(
            f"<img src=\"{escape(listing.image_url)}\" alt=\"Listing photo\" "
            "style=\"max-width: 100%; border-radius: 8px;\" />"
        )
    if listing.title:
        parts.append(f"<h2 style=\"font-size: 18px;\">{escape(listing.title)}</h2>")

    parts.append(f"<p style=\"margin: 0;\">{escape(listing.address)}</p>")
    if listing.neighborhood:
        parts.append(f"<p style=\"margin: 0; color: #6b7280;\">{escape(listing.neighborhood)}</p>")

    details = f"{_num(listing.bedrooms)} bed | {_num(listing.bathrooms)} bath"
    if listing.sqft:
        details += f" | {listing.sqft:,} sqft"
    parts.append(f"<p>{details}</p>")
    parts.append(f"<p style=\"font-size: 20px; font-weight: bold;\">${listing.price:,}/month</p>")
    parts.append(f"<p>{'No fee' if listing.no_fee else 'Broker fee may apply'}</p>")

    stabilization = _stabilization_line(listing)
    if stabilization:
        parts.append(f"<p>{stabilization}</p>")
    if listing.url:
        parts.append(
            f"<p><a href=\"{escape(listing.url)}\" style=\"background: #2563eb; color: #fff; "
            "padding: 10px 18px; border-radius: 6px; text-decoration: none;\">View Listing</a></p>"
        )

    parts.append("<hr />")
    parts.append(
        "<p style=\"font-size: 12px; color: #6b7280;\">"
        "You're receiving this email because you created a rental alert.</p>"
    )
    parts.append("</body></html>")
    return "\n".join(parts)


def format_plain_text(listing: Listing, criterion: Criterion) -> str:
    lines = [
        f"New match for \"{criterion.name}\"",
        listing.title,
        listing.address,
        f"${listing.price:,}/mo | {_num(listing.bedrooms)}bd {_num(listing.bathrooms)}ba",
    ]
    if listing.no_fee:
        lines.append("No fee")
    stabilization = _stabilization_line(listing)
    if stabilization:
        lines.append(stabilization)
    lines.append(listing.url)
    return "\n".join(line for line in lines if line)
