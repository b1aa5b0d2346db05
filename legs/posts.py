"""
Human-readable annotations attached to legs.

Post 1 is the announcement written when a leg is first seen.  Post 2, when
present, is either a "Flight Details" summary (flights with source extras) or a
"Complete Schedule" table (trips with more than two stops).  Later posts are
status-change notices.

Detail posts are built as a small block list so the same content renders to
both markdown (stored raw) and HTML (stored cooked, served as details_html).
"""

from datetime import datetime
from html import escape
from typing import Any

from legs.types import NormalizedLeg

SCHEDULE_MIN_STOPS = 3


class _Document:
    """Ordered blocks: ("h", level, text) | ("kv", label, value) | ("p", text) | ("ul", items) | ("table", header, rows)."""

    def __init__(self) -> None:
        self.blocks: list[tuple] = []

    def heading(self, level: int, text: str) -> None:
        self.blocks.append(("h", level, text))

    def field(self, label: str, value: Any) -> None:
        self.blocks.append(("kv", label, str(value)))

    def paragraph(self, text: str) -> None:
        self.blocks.append(("p", text))

    def bullets(self, items: list[str]) -> None:
        self.blocks.append(("ul", items))

    def table(self, header: list[str], rows: list[list[str]]) -> None:
        self.blocks.append(("table", header, rows))

    def to_markdown(self) -> str:
        out: list[str] = []
        for block in self.blocks:
            kind = block[0]
            if kind == "h":
                out.append(f"\n{'#' * block[1]} {block[2]}\n")
            elif kind == "kv":
                out.append(f"- **{block[1]}:** {block[2]}")
            elif kind == "p":
                out.append(f"\n{block[1]}\n")
            elif kind == "ul":
                out.extend(f"- {item}" for item in block[1])
            elif kind == "table":
                header, rows = block[1], block[2]
                out.append("| " + " | ".join(header) + " |")
                out.append("|" + "|".join("---" for _ in header) + "|")
                out.extend("| " + " | ".join(row) + " |" for row in rows)
        return "\n".join(out).strip() + "\n"

    def to_html(self) -> str:
        out: list[str] = []
        open_list = False
        for block in self.blocks:
            kind = block[0]
            if kind == "kv" and not open_list:
                out.append("<ul>")
                open_list = True
            elif kind != "kv" and open_list:
                out.append("</ul>")
                open_list = False
            if kind == "h":
                out.append(f"<h{block[1]}>{escape(block[2])}</h{block[1]}>")
            elif kind == "kv":
                out.append(f"<li><strong>{escape(block[1])}:</strong> {escape(block[2])}</li>")
            elif kind == "p":
                out.append(f"<p>{escape(block[1])}</p>")
            elif kind == "ul":
                out.append("<ul>" + "".join(f"<li>{escape(i)}</li>" for i in block[1]) + "</ul>")
            elif kind == "table":
                header, rows = block[1], block[2]
                head = "".join(f"<th>{escape(h)}</th>" for h in header)
                body = "".join(
                    "<tr>" + "".join(f"<td>{escape(c)}</td>" for c in row) + "</tr>" for row in rows
                )
                out.append(f"<table><thead><tr>{head}</tr></thead><tbody>{body}</tbody></table>")
        if open_list:
            out.append("</ul>")
        return "\n".join(out)


def _hhmm(dt: datetime | None) -> str:
    return dt.strftime("%H:%M") if dt else "—"


def build_title(leg: NormalizedLeg) -> str:
    return f"{leg.route_short_name or leg.trip_id} to {leg.headsign or leg.dest_name} at {_hhmm(leg.dep_scheduled)}"


def build_announcement(leg: NormalizedLeg) -> str:
    scheduled = leg.dep_scheduled.strftime("%Y-%m-%d %H:%M UTC") if leg.dep_scheduled else "—"
    estimated = leg.dep_estimated.strftime("%Y-%m-%d %H:%M UTC") if leg.dep_estimated else "On time"
    return (
        f"**Route:** {leg.route_short_name or ''}\n"
        f"**Headsign:** {leg.headsign}\n"
        f"**Origin:** {leg.origin_name}\n"
        f"**Destination:** {leg.dest_name}\n"
        f"**Platform:** {leg.platform or ''}\n"
        f"\n"
        f"**Scheduled Departure:** {scheduled}\n"
        f"**Estimated Departure:** {estimated}\n"
        f"\n"
        f"**Trip ID:** {leg.trip_id}\n"
        f"**Vehicle ID:** {leg.vehicle_id or ''}\n"
    )


def build_flight_details(leg: NormalizedLeg, route_short_name: str | None) -> _Document:
    """
    Flight details post.  `route_short_name` is the stored (possibly
    code-share accumulated) value, used for the "Also sold as" list.
    """
    details = leg.extra_details or {}
    doc = _Document()
    doc.heading(2, "Flight Details")

    if details.get("airline_name"):
        code = f" ({details['airline_iata']})" if details.get("airline_iata") else ""
        doc.field("Airline", f"{details['airline_name']}{code}")
    if details.get("flight_status"):
        doc.field("Status", str(details["flight_status"]).capitalize())

    doc.heading(3, f"Departure - {leg.origin_name} ({leg.origin_code})")
    doc.field("Gate", leg.gate or "TBA")
    if leg.terminal:
        doc.field("Terminal", leg.terminal)
    doc.field("Scheduled", f"{_hhmm(leg.dep_scheduled)} UTC")
    doc.field("Estimated", f"{_hhmm(leg.dep_estimated)} UTC")
    delay = details.get("departure_delay")
    if delay and int(delay) > 0:
        doc.field("Delay", f"{int(delay)} minutes")
    if details.get("departure_actual"):
        doc.field("Actual Departure", f"{_hhmm(details['departure_actual'])} UTC")

    doc.heading(3, f"Arrival - {leg.dest_name} ({leg.dest_code})")
    doc.field("Gate", details.get("arrival_gate") or "TBA")
    if details.get("arrival_baggage"):
        doc.field("Baggage Claim", details["arrival_baggage"])
    doc.field("Scheduled", f"{_hhmm(leg.arr_scheduled)} UTC")
    if leg.arr_estimated:
        doc.field("Estimated", f"{_hhmm(leg.arr_estimated)} UTC")
    if details.get("arrival_actual"):
        doc.field("Actual Arrival", f"{_hhmm(details['arrival_actual'])} UTC")

    codeshare = details.get("codeshare")
    if codeshare:
        airline = (codeshare.get("airline_name") or "").title() or codeshare.get("airline_iata") or ""
        flight = codeshare.get("flight_iata") or codeshare.get("flight_icao") or ""
        doc.heading(3, "Code-Share")
        doc.paragraph(f"This flight is operated by {airline} ({flight}).")
        sold_as = split_route_codes(route_short_name)
        if len(sold_as) > 1:
            doc.paragraph("Also sold as:")
            doc.bullets(sold_as)

    if details.get("aircraft_registration"):
        doc.heading(3, "Aircraft")
        doc.field("Registration", details["aircraft_registration"])

    doc.paragraph("All times in UTC. Information subject to change.")
    return doc


def build_schedule(leg: NormalizedLeg) -> _Document:
    doc = _Document()
    doc.heading(2, "Complete Schedule")
    doc.field("Line", leg.route_short_name or "")
    doc.field("Direction", leg.headsign)
    doc.table(
        ["Stop", "Arrival", "Departure"],
        [[s.stop_name or s.stop_id, _hhmm(s.arrival_time), _hhmm(s.departure_time)] for s in leg.stops],
    )
    doc.paragraph("Schedule times are in UTC. This is the planned schedule and may be subject to delays.")
    return doc


def build_details(leg: NormalizedLeg, route_short_name: str | None) -> _Document | None:
    """The post-2 document for a leg, or None when the leg warrants none."""
    if leg.mode == "flight":
        return build_flight_details(leg, route_short_name) if leg.extra_details else None
    if len(leg.stops) >= SCHEDULE_MIN_STOPS:
        return build_schedule(leg)
    return None


def build_status_change(old_status: str | None, new_status: str, minutes: int | None) -> str:
    message = f"⚠️ Status changed: {old_status or 'unknown'} → {new_status}."
    if minutes is not None:
        message += f" Delayed by {minutes} minutes."
    return message


def split_route_codes(route_short_name: str | None) -> list[str]:
    """'AA100 / BA900' → ['AA100', 'BA900']; blanks dropped."""
    if not route_short_name:
        return []
    return [code.strip() for code in route_short_name.split("/") if code.strip()]
