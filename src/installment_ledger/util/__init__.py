from .dates import parse_loose_date, parse_timestamp, to_local_date
from .money import format_rupees, is_valid_amount, parse_amount, round_money

__all__ = [
    "parse_loose_date",
    "parse_timestamp",
    "to_local_date",
    "format_rupees",
    "is_valid_amount",
    "parse_amount",
    "round_money",
]
