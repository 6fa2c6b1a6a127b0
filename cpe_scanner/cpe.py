# cpe_scanner/cpe.py
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, unquote

# Splits on ':' unless the colon is backslash-escaped (cpe:2.3 formatted strings)
_FS_SPLIT = re.compile(r"(?<!\\):")


@dataclass(frozen=True)
class Cpe:
    part: str
    vendor: str
    product: str
    version: str = ""
    update: str = ""
    edition: str = ""
    language: str = ""

    @property
    def vendor_product(self) -> str:
        return f"{self.vendor}:{self.product}"

    def to_uri(self) -> str:
        """Formats as a CPE 2.2 URI, dropping trailing empty components."""
        values = [self.vendor, self.product, self.version, self.update, self.edition, self.language]
        while values and not values[-1]:
            values.pop()
        encoded = [quote(v, safe="._-~%") for v in values]
        return ":".join([f"cpe:/{self.part}"] + encoded)


def parse_cpe(cpe_string: str) -> Optional[Cpe]:
    """Parses either 'cpe:/a:vendor:product:version...' or 'cpe:2.3:a:vendor:product:version...'."""
    if not cpe_string:
        return None
    cpe_string = cpe_string.strip()
    if cpe_string.startswith("cpe:2.3:"):
        return _parse_formatted_string(cpe_string)
    if cpe_string.lower().startswith("cpe:/"):
        return _parse_uri(cpe_string)
    return None


def _parse_uri(cpe_string: str) -> Optional[Cpe]:
    parts = cpe_string[5:].split(":")
    if len(parts) < 3 or not parts[0] or not parts[1] or not parts[2]:
        return None
    parts = [unquote(p).lower() for p in parts] + [""] * 7
    return Cpe(part=parts[0], vendor=parts[1], product=parts[2], version=parts[3],
               update=parts[4], edition=parts[5], language=parts[6])


def _parse_formatted_string(cpe_string: str) -> Optional[Cpe]:
    parts = _FS_SPLIT.split(cpe_string)
    if len(parts) < 6:
        return None

    def value(index: int) -> str:
        if index >= len(parts):
            return ""
        v = parts[index].replace("\\", "").lower()
        return "" if v == "*" else v

    if not value(3) or not value(4):
        return None
    return Cpe(part=value(2), vendor=value(3), product=value(4), version=value(5),
               update=value(6), edition=value(7), language=value(8))


def to_versionless_uri(vendor: str, product: str) -> str:
    return Cpe(part="a", vendor=vendor, product=product).to_uri()
