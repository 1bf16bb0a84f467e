from .dates import cairo_day, parse_portal_date
from .numbers import find_egp_amounts, num_from_text

__all__ = ["cairo_day", "parse_portal_date", "num_from_text", "find_egp_amounts"]
