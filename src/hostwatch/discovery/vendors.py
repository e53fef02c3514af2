"""MAC prefix to vendor lookup."""

import logging
import re
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from types import MappingProxyType

from ..core.events import UNKNOWN

logger = logging.getLogger(__name__)

BUNDLED_DATABASE = Path(__file__).parent / "data" / "vendors.tsv"

_PREFIX_RE = re.compile(r"^[0-9A-F]{6}$")
_SEPARATORS_RE = re.compile(r"[\s:.\-]")

# Vendors known to ship under prefixes missing from common databases
PREFIX_ALIASES: dict[str, tuple[str, ...]] = {
    "04D4C4": ("04D9F5", "04D3CF"),
    "C4EB42": ("C4E984", "C46E1F"),
}

PATTERN_GUESSES: dict[str, str] = {
    "04D4C4": "ASUSTek Computer Inc. (probably)",
    "C4EB42": "TP-Link Technologies (probably)",
    "04D9F5": "ASUSTek Computer Inc.",
}

LOCALLY_ADMINISTERED = "Virtual machine (probably)"


def mac_prefix(mac: str | None) -> str | None:
    """Return the upper-case 6 hex digit OUI of mac, or None."""
    if not mac:
        return None
    prefix = _SEPARATORS_RE.sub("", mac).upper()[:6]
    if not _PREFIX_RE.match(prefix):
        return None
    return prefix


class VendorCatalog:
    """
    Table of 24-bit MAC prefixes to vendor names.

    The table is replaced wholesale on reload. Readers take the current
    table reference and never observe a partially loaded table.
    """

    def __init__(self, path: str | Path | None = None, load_now: bool = True):
        self.path = Path(path) if path else None
        self._table: Mapping[str, str] = MappingProxyType({})
        self._reload_lock = threading.Lock()
        self.source: Path | None = None
        if load_now:
            self.reload()

    @staticmethod
    def load(source: str | Path | Iterable[str]) -> dict[str, str]:
        """
        Parse `PREFIX<TAB>Vendor` records.

        Args:
            source: A file path, or an iterable of lines

        Returns:
            Mapping of upper-case prefix to vendor name. Blank lines, lines
            without a tab and lines whose prefix is not 6 hex digits are
            skipped.
        """
        if isinstance(source, (str, Path)):
            with open(source, encoding="utf-8") as f:
                return VendorCatalog.load(f.readlines())

        table: dict[str, str] = {}
        skipped = 0
        for line in source:
            line = line.rstrip("\r\n")
            if not line.strip() or "\t" not in line:
                skipped += 1
                continue
            prefix, vendor = line.split("\t", 1)
            prefix = prefix.strip().upper()
            vendor = vendor.strip()
            if not vendor or not _PREFIX_RE.match(prefix):
                skipped += 1
                continue
            table[prefix] = vendor

        logger.debug(f"Parsed {len(table)} vendor records, skipped {skipped} lines")
        return table

    def _candidate_paths(self) -> list[Path]:
        paths = []
        if self.path is not None:
            paths.append(self.path)
            if not self.path.is_absolute():
                paths.append(Path.cwd() / self.path.name)
        paths.append(BUNDLED_DATABASE)
        return paths

    def reload(self) -> int:
        """
        Reload the table from the first readable database and swap it in.

        A missing or unreadable database is logged and the next candidate is
        tried; if none can be read the catalog is left empty.

        Returns:
            Number of entries now loaded
        """
        with self._reload_lock:
            for path in self._candidate_paths():
                if not path.exists():
                    continue
                try:
                    table = self.load(path)
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning(f"Cannot read vendor database {path}: {e}")
                    continue

                if path == BUNDLED_DATABASE and self.path is not None:
                    logger.warning(
                        f"Vendor database {self.path} not found, "
                        "using bundled vendor table"
                    )
                self._table = MappingProxyType(table)
                self.source = path
                logger.info(f"Loaded {len(table)} vendor prefixes from {path}")
                return len(table)

            logger.warning("No vendor database available, vendor lookups disabled")
            self._table = MappingProxyType({})
            self.source = None
            return 0

    def __len__(self) -> int:
        return len(self._table)

    def __contains__(self, prefix: str) -> bool:
        return prefix.upper() in self._table

    def lookup(self, mac: str | None) -> str:
        """
        Resolve the vendor of a MAC address.

        The exact prefix is checked first, then known alias prefixes, then a
        pattern heuristic. Returns "Unknown" when nothing matches.
        """
        prefix = mac_prefix(mac)
        if prefix is None:
            return UNKNOWN

        table = self._table
        vendor = table.get(prefix)
        if vendor:
            return vendor

        for alias in PREFIX_ALIASES.get(prefix, ()):
            vendor = table.get(alias)
            if vendor:
                logger.debug(f"Vendor for {prefix} resolved through alias {alias}")
                return vendor

        return self.guess(prefix)

    @staticmethod
    def guess(prefix: str) -> str:
        """Last-resort vendor guess for a prefix missing from the table."""
        if prefix in PATTERN_GUESSES:
            return PATTERN_GUESSES[prefix]

        first_octet = int(prefix[:2], 16)
        # locally administered unicast addresses are assigned by hypervisors
        if first_octet & 0x02 and not first_octet & 0x01:
            return LOCALLY_ADMINISTERED
        return UNKNOWN
