"""Command line options of the ACL extension controller."""

from __future__ import annotations

import argparse
import re
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from .actuator import Config

EXTENSION_NAME = "acl"
DEFAULT_SYNC_PERIOD = timedelta(seconds=30)
CHART_PATH = "charts"
MAX_CONCURRENT_RECONCILES = 5

_UNIT_NANOSECONDS = {
    "ns": Decimal(1),
    "us": Decimal(1_000),
    "µs": Decimal(1_000),
    "μs": Decimal(1_000),
    "ms": Decimal(1_000_000),
    "s": Decimal(1_000_000_000),
    "m": Decimal(60_000_000_000),
    "h": Decimal(3_600_000_000_000),
}
_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "30s", "1h15m" or "-1.5h"."""
    rest = text
    negative = False
    if rest[:1] in ("+", "-"):
        negative = rest[0] == "-"
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f"invalid duration {text!r}")

    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _COMPONENT.match(rest, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        try:
            amount = Decimal(match.group(1))
        except InvalidOperation:
            raise ValueError(f"invalid duration {text!r}") from None
        total += amount * _UNIT_NANOSECONDS[match.group(2)]
        pos = match.end()

    microseconds = total / 1000
    if negative:
        microseconds = -microseconds
    return timedelta(microseconds=float(microseconds))


class _StringSliceAction(argparse.Action):
    """Collect comma separated values; repeated flags append."""

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: str | None = None,
    ) -> None:
        current = list(getattr(namespace, self.dest, None) or [])
        current.extend(values.split(",") if values else [])
        setattr(namespace, self.dest, current)


@dataclass
class ExtensionOptions:
    """Options of the extension itself, as opposed to its controller."""

    health_check_sync_period: timedelta = DEFAULT_SYNC_PERIOD
    chart_path: str = CHART_PATH
    additional_allowed_cidrs: list[str] = field(default_factory=list)

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register the extension options on a parser."""
        parser.add_argument(
            "--healthcheck-sync-period",
            dest="health_check_sync_period",
            type=parse_duration,
            default=DEFAULT_SYNC_PERIOD,
            help="Default healthcheck sync period.",
        )
        parser.add_argument(
            "--chart-path",
            dest="chart_path",
            default=CHART_PATH,
            help="Location of the chart directories to deploy",
        )
        parser.add_argument(
            "--additional-allowed-cidrs",
            dest="additional_allowed_cidrs",
            action=_StringSliceAction,
            default=None,
            help=(
                "List of IPs that will be added to the list of allowed CIDRs, "
                "e.g. '192.168.1.40/32,10.250.0.0/16'"
            ),
        )

    @classmethod
    def from_args(cls, argv: Sequence[str] | None = None) -> ExtensionOptions:
        """Parse the options from command line arguments."""
        parser = argparse.ArgumentParser(prog="acl-controller")
        cls().add_arguments(parser)
        namespace = parser.parse_args(argv)
        return cls(
            health_check_sync_period=namespace.health_check_sync_period,
            chart_path=namespace.chart_path,
            additional_allowed_cidrs=list(namespace.additional_allowed_cidrs or []),
        )

    def apply(self, config: Config) -> None:
        """Copy these options into the extension configuration."""
        config.chart_path = self.chart_path
        config.additional_allowed_cidrs = list(self.additional_allowed_cidrs)