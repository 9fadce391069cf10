"""Admission validation of ACL extension settings in garden Shoot objects."""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass, field
from typing import Any

from .actuator import Config
from .envoyfilters import ExtensionSpec
from .webhook import EXTENSION_NAME

NAME = "validator"
PROVIDER = "acl"
WEBHOOK_PATH = "/webhooks/validate"
OBJECT_SELECTOR = {"extensions.extensions.gardener.cloud/acl": "true"}
DEFAULT_MAX_ALLOWED_CIDRS = 50
ERROR_TYPE_TOO_MANY = "FieldValueTooMany"


@dataclass
class ShootExtension:
    """An extension entry in a Shoot's spec."""

    type: str
    provider_config: str | bytes | None = None


@dataclass
class GardenShoot:
    """The parts of a garden Shoot object that the validator reads."""

    name: str = ""
    namespace: str = ""
    extensions: list[ShootExtension] = field(default_factory=list)


class TooManyError(ValueError):
    """Raised when a list field holds more items than allowed."""

    def __init__(self, field_path: str, actual: int, limit: int) -> None:
        super().__init__(
            f"{field_path}: Too many: {actual}: must have at most {limit} items"
        )
        self.type = ERROR_TYPE_TOO_MANY
        self.field = field_path
        self.actual = actual
        self.limit = limit


@dataclass
class AdmissionOptions:
    """Command line options of the admission component."""

    max_allowed_cidrs: int = DEFAULT_MAX_ALLOWED_CIDRS

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register the admission options on a parser."""
        parser.add_argument(
            "--maxAllowedCIDRs",
            dest="max_allowed_cidrs",
            type=int,
            default=DEFAULT_MAX_ALLOWED_CIDRS,
            help="maximum number of allowed CIDRs per cluster",
        )

    def apply(self, config: Config) -> None:
        """Copy these options into the extension configuration."""
        config.max_allowed_cidrs = self.max_allowed_cidrs


def _decode_extension_spec(raw: str | bytes | None) -> ExtensionSpec | None:
    if raw is None:
        return ExtensionSpec()
    data: Any = json.loads(raw)
    if data is None:
        return None
    return ExtensionSpec.from_dict(data)


class ShootValidator:
    """Validates the ACL extension configuration of Shoot objects."""

    def __init__(self, max_allowed_cidrs: int = DEFAULT_MAX_ALLOWED_CIDRS) -> None:
        self.max_allowed_cidrs = max_allowed_cidrs

    def validate(self, new: Any, old: Any) -> None:
        """Reject shoots whose ACL rule lists more CIDRs than allowed."""
        if not isinstance(new, GardenShoot):
            raise TypeError(f"wrong object type {type(new).__name__}")
        self._validate_shoot(new)

    def _validate_shoot(self, shoot: GardenShoot) -> None:
        found = next(
            (
                (index, ext)
                for index, ext in enumerate(shoot.extensions)
                if ext.type == EXTENSION_NAME
            ),
            None,
        )
        if found is None:
            return
        index, extension = found

        try:
            spec = _decode_extension_spec(extension.provider_config)
        except (ValueError, TypeError) as err:
            raise ValueError(f"error decoding ACL extension spec: {err}") from err

        if spec is None or spec.rule is None:
            return

        count = len(spec.rule.cidrs)
        if count > self.max_allowed_cidrs:
            raise TooManyError(
                f"spec.extensions[{index}].providerConfig.rule.cidrs",
                count,
                self.max_allowed_cidrs,
            )