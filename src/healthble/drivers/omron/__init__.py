"""Omron device families.

The protocol handling is based on the community reverse engineering in
omblepy (https://github.com/userx14/omblepy) and ubpm
(https://codeberg.org/LazyT/ubpm).
"""

from .base import OMRON_COMPANY_ID, OmronDriver, RawRecord
from .hem_7361t import Hem7361tDriver
from .hn_300t2 import Hn300t2Driver

__all__ = [
    "OMRON_COMPANY_ID",
    "OmronDriver",
    "RawRecord",
    "Hem7361tDriver",
    "Hn300t2Driver",
]
