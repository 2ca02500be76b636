"""
Sharing data between phases of a test scenario.

A scenario split into phases runs each phase as a separate process, possibly
at a different time. A phase stores its "legacy" in a file and a later phase
loads it again. Two ways of addressing a legacy are supported:

1. save_with_key() and load_with_key() take an explicit key. The key is used
   as the file name, so it must be unique across all scenarios.

2. save() and load() derive the key from the identity of the running test.
   The scenario name must contain "Phase" followed by a digit; phases of one
   scenario differ only in that digit, so dropping it yields a name that all
   phases agree on. The legacy can be shared by every test of the scenario
   (SCOPE_CASE) or only by tests of the same name (SCOPE_TEST).

Example:
    # FooPhase1Test.test_order
    store = PhaseLegacyStore(TestIdentity.from_class_name("FooPhase1Test", "test_order"))
    store.save({"order_id": 42})

    # FooPhase2Test.test_order, run later
    store = PhaseLegacyStore(TestIdentity.from_class_name("FooPhase2Test", "test_order"))
    order_id = store.load()["order_id"]
"""

import os
import re
import tempfile
import unicodedata
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml
from jsonschema import validate, ValidationError as SchemaValidationError

from harness_errors import KeyDerivationError, NotFoundError, StoreError


SCOPE_CASE = "CASE"
SCOPE_TEST = "TEST"

LEGACY_SUFFIX = ".legacy"
LEGACY_FORMAT = "phase-legacy/1"
DEFAULT_LEGACY_DIR = Path(__file__).resolve().parent / "logs"

PHASE_MARKER = re.compile(r"Phase(\d)")

# Latin letters without a Unicode decomposition to an ASCII base letter
TRANSLITERATION = str.maketrans({
    "Ł": "L", "ł": "l",
    "Ø": "O", "ø": "o",
    "Đ": "D", "đ": "d",
    "Ð": "D", "ð": "d",
    "Ħ": "H", "ħ": "h",
    "Ŧ": "T", "ŧ": "t",
    "Ŋ": "N", "ŋ": "n",
    "Þ": "TH", "þ": "th",
    "Æ": "AE", "æ": "ae",
    "Œ": "OE", "œ": "oe",
    "ß": "ss", "ẞ": "SS",
    "ı": "i", "ĸ": "k", "ſ": "s",
})

TUPLE_TAG = "tag:yaml.org,2002:python/tuple"


class LegacyDumper(yaml.SafeDumper):
    """Safe YAML dumper that keeps tuples distinct from lists."""
    pass


class LegacyLoader(yaml.SafeLoader):
    """Safe YAML loader that reads tuples written by LegacyDumper."""
    pass


LegacyDumper.add_representer(
    tuple,
    lambda dumper, data: dumper.represent_sequence(TUPLE_TAG, data)
)
LegacyLoader.add_constructor(
    TUPLE_TAG,
    lambda loader, node: tuple(loader.construct_sequence(node, deep=True))
)


def dump_yaml(data: Any) -> str:
    """Serialize legacy data as YAML."""
    return yaml.dump(data, Dumper=LegacyDumper, default_flow_style=False, allow_unicode=True)


def load_yaml(content: str) -> Any:
    return yaml.load(content, Loader=LegacyLoader)


LEGACY_ENVELOPE_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["format", "key", "data"],
    "properties": {
        "format": {"const": LEGACY_FORMAT},
        "key": {"type": "string"},
        "saved_at": {"type": "string"},
        "data": {},
    },
}


@dataclass(frozen=True)
class TestIdentity:
    """Identity of the running test, as far as legacy keys are concerned."""
    scenario_base_name: str
    phase_number: int
    test_name: Optional[str] = None

    @classmethod
    def from_class_name(cls, class_name: str, test_name: Optional[str] = None) -> "TestIdentity":
        """
        Build an identity from a phase-tagged scenario class name.

        Every "Phase<digit>" marker is removed from the name; the first one
        gives the phase number.

        Raises:
            KeyDerivationError: If the name has no phase marker
        """
        match = PHASE_MARKER.search(class_name)
        if not match:
            raise KeyDerivationError(
                f"Cannot generate legacy name from class without 'Phase' followed by number in name {class_name}"
            )
        return cls(
            scenario_base_name=PHASE_MARKER.sub("", class_name),
            phase_number=int(match.group(1)),
            test_name=test_name
        )


def slugify(value: str) -> str:
    """
    Make a case-preserving, filesystem-safe slug.

    Characters are transliterated to ASCII where possible and every run of
    anything other than letters and digits becomes a single dash.
    """
    normalized = unicodedata.normalize("NFKD", value.translate(TRANSLITERATION))
    normalized = normalized.encode("ascii", "ignore").decode("ascii")
    return re.sub(r"[^A-Za-z0-9]+", "-", normalized).strip("-")


def derive_key(identity: TestIdentity, scope: str = SCOPE_CASE) -> str:
    """
    Derive the legacy key for a test identity.

    Args:
        identity: Identity of the running test
        scope: SCOPE_CASE (shared by all tests of the scenario)
            or SCOPE_TEST (shared only by tests of the same name)

    Returns:
        Key usable as a file name, ending with the legacy suffix

    Raises:
        KeyDerivationError: If the scope is unknown or the identity lacks what it needs
    """
    if scope not in (SCOPE_CASE, SCOPE_TEST):
        raise KeyDerivationError(f'Unknown legacy scope "{scope}"')

    name = slugify(identity.scenario_base_name)
    if not name:
        raise KeyDerivationError(
            f'Scenario name "{identity.scenario_base_name}" gives an empty legacy name'
        )

    if scope == SCOPE_TEST:
        if not identity.test_name:
            raise KeyDerivationError(
                f'Test-scoped legacy requires a test name for scenario "{identity.scenario_base_name}"'
            )
        name += "#" + slugify(identity.test_name)

    return name + LEGACY_SUFFIX


class PhaseLegacyStore:
    """Saves and loads legacy data of a test in the legacy directory."""

    def __init__(self, identity: Optional[TestIdentity] = None, legacy_dir: Optional[str] = None):
        """
        Initialize the store.

        Args:
            identity: Identity of the running test, needed by save() and load()
            legacy_dir: Directory holding legacy files. Defaults to the logs
                directory of the installation.
        """
        self.identity = identity
        self.legacy_dir = Path(legacy_dir) if legacy_dir else DEFAULT_LEGACY_DIR

    def derive_key(self, scope: str = SCOPE_CASE) -> str:
        if self.identity is None:
            raise KeyDerivationError("No test identity given, use save_with_key() or load_with_key()")
        return derive_key(self.identity, scope)

    def get_legacy_path(self, key: str) -> Path:
        """
        Get the path of the file holding the legacy stored under key.

        Raises:
            StoreError: If the key is not a plain file name
        """
        if not key or key in (".", "..") or "/" in key or os.sep in key or "\0" in key:
            raise StoreError(f'Invalid legacy key "{key}"')
        return self.legacy_dir / key

    def save(self, data: Any, scope: str = SCOPE_CASE) -> str:
        """
        Store legacy under the key derived from the test identity.

        Returns:
            The key the data was stored under
        """
        key = self.derive_key(scope)
        self.save_with_key(data, key)
        return key

    def save_with_key(self, data: Any, key: str) -> None:
        """
        Store legacy under an explicit key, replacing any previous value.

        Raises:
            StoreError: If the data cannot be serialized or written
        """
        path = self.get_legacy_path(key)
        envelope = {
            "format": LEGACY_FORMAT,
            "key": key,
            "saved_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat(),
            "data": data,
        }

        try:
            content = dump_yaml(envelope)
        except yaml.YAMLError as e:
            raise StoreError(f"Cannot serialize legacy for key {key}: {str(e)}") from e

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Write to a sibling temp file and rename it into place
            fd, temp_name = tempfile.mkstemp(dir=str(path.parent), prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_name, path)
            except BaseException:
                Path(temp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StoreError(f"Cannot save legacy to file {path}: {str(e)}") from e

    def load(self, scope: str = SCOPE_CASE) -> Any:
        """Read legacy stored under the key derived from the test identity."""
        return self.load_with_key(self.derive_key(scope))

    def load_with_key(self, key: str) -> Any:
        """
        Read legacy stored under an explicit key.

        Raises:
            NotFoundError: If nothing was stored under the key
            StoreError: If the stored file cannot be read or parsed
        """
        path = self.get_legacy_path(key)

        if not path.exists():
            raise NotFoundError(f"Cannot find legacy file {path}")

        try:
            with open(path, "r", encoding="utf-8") as f:
                content = f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise StoreError(f"Cannot read legacy file {path}: {str(e)}") from e

        try:
            envelope = load_yaml(content)
            validate(instance=envelope, schema=LEGACY_ENVELOPE_SCHEMA)
        except yaml.YAMLError as e:
            raise StoreError(f"Cannot parse legacy from file {path}: {str(e)}") from e
        except SchemaValidationError as e:
            raise StoreError(f"File {path} is not a legacy record: {e.message}") from e

        return envelope["data"]
