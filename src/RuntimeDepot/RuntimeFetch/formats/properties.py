"""Line-oriented ``key=value`` codec used for description database records."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from ..errors import FormatError
from ..runtime import (
    RuntimeBuild,
    RuntimeConfiguration,
    RuntimeDescription,
    RuntimeHash,
    RuntimeVersion,
)

__all__ = [
    "PROPERTIES_CONTENT_TYPE",
    "FORMAT_VERSION",
    "PropertiesCodec",
    "dump_properties",
    "load_properties",
]

PROPERTIES_CONTENT_TYPE = "text/x-runtimedepot-properties"
FORMAT_VERSION = 1

_FORMAT_KEY = "runtimedepot.formatVersion"
_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", "\t": "\\t", "=": "\\=", ":": "\\:", "#": "\\#", "!": "\\!"}
_UNESCAPES = {"n": "\n", "r": "\r", "t": "\t"}


def _escape(text: str) -> str:
    escaped = "".join(_ESCAPES.get(char, char) for char in text)
    if escaped.startswith(" "):
        escaped = "\\" + escaped
    return escaped


def _unescape(text: str) -> str:
    out: List[str] = []
    chars = iter(text)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        following = next(chars, "")
        out.append(_UNESCAPES.get(following, following))
    return "".join(out)


def _split_line(line: str) -> tuple[str, str]:
    escaped = False
    for index, char in enumerate(line):
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char in "=:":
            return _unescape(line[:index].strip()), _unescape(line[index + 1 :].lstrip())
    return _unescape(line.strip()), ""


def dump_properties(values: Dict[str, str]) -> bytes:
    """Serialise ``values`` sorted by key, one ``key=value`` per line."""

    lines = [f"{_escape(key)}={_escape(values[key])}" for key in sorted(values)]
    return ("\n".join(lines) + "\n").encode("utf-8")


def load_properties(data: bytes) -> Dict[str, str]:
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise FormatError("properties document is not valid UTF-8", errors=[str(exc)]) from exc
    values: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.lstrip()
        if not line or line[0] in "#!":
            continue
        key, value = _split_line(line)
        values[key] = value
    return values


class PropertiesCodec:
    """Codec for one runtime description per properties document."""

    content_type = PROPERTIES_CONTENT_TYPE

    def serialize(self, description: RuntimeDescription) -> bytes:
        values = {
            _FORMAT_KEY: str(FORMAT_VERSION),
            "runtimeRepository": description.repository,
            "runtimeVersion": description.version.to_external_string(),
            "runtimeConfiguration": description.configuration.value,
            "runtimePlatform": description.platform,
            "runtimeVM": description.vm,
            "runtimeArchitecture": description.architecture,
            "runtimeArchiveSize": str(description.archive_size),
            "runtimeArchiveURI": description.archive_uri,
            "runtimeArchiveHashAlgorithm": description.archive_hash.algorithm,
            "runtimeArchiveHashValue": description.archive_hash.value,
            "runtimeTags": " ".join(sorted(description.tags)),
        }
        if description.build is not None:
            values["runtimeBuildNumber"] = description.build.number
            values["runtimeBuildTime"] = description.build.time.isoformat()
        return dump_properties(values)

    def parse(self, data: bytes) -> RuntimeDescription:
        values = load_properties(data)
        errors: List[str] = []

        def required(key: str) -> Optional[str]:
            value = values.get(key)
            if value is None:
                errors.append(f"missing required property {key!r}")
            return value

        def convert(key: str, parser):
            raw = required(key)
            if raw is None:
                return None
            try:
                return parser(raw)
            except ValueError as exc:
                errors.append(f"{key}: {exc}")
                return None

        format_version = convert(_FORMAT_KEY, int)
        if format_version is not None and format_version != FORMAT_VERSION:
            errors.append(f"unsupported format version {format_version}")

        repository = required("runtimeRepository")
        version = convert("runtimeVersion", RuntimeVersion.parse)
        configuration = convert("runtimeConfiguration", RuntimeConfiguration.parse)
        platform = required("runtimePlatform")
        vm = required("runtimeVM")
        architecture = required("runtimeArchitecture")
        archive_size = convert("runtimeArchiveSize", int)
        archive_uri = required("runtimeArchiveURI")
        algorithm = required("runtimeArchiveHashAlgorithm")
        hash_value = required("runtimeArchiveHashValue")
        tags = frozenset(values.get("runtimeTags", "").split())

        archive_hash = None
        if algorithm is not None and hash_value is not None:
            try:
                archive_hash = RuntimeHash(algorithm, hash_value)
            except ValueError as exc:
                errors.append(f"runtimeArchiveHash: {exc}")

        build = None
        build_number = values.get("runtimeBuildNumber")
        build_time = values.get("runtimeBuildTime")
        if (build_number is None) != (build_time is None):
            errors.append("runtimeBuildNumber and runtimeBuildTime must be given together")
        elif build_number is not None and build_time is not None:
            try:
                build = RuntimeBuild(number=build_number, time=datetime.fromisoformat(build_time))
            except ValueError as exc:
                errors.append(f"runtimeBuildTime: {exc}")

        if errors:
            raise FormatError("invalid runtime description", errors=errors)

        try:
            return RuntimeDescription(
                repository=repository,
                version=version,
                platform=platform,
                architecture=architecture,
                vm=vm,
                configuration=configuration,
                archive_uri=archive_uri,
                archive_size=archive_size,
                archive_hash=archive_hash,
                tags=tags,
                build=build,
            )
        except ValueError as exc:
            raise FormatError("invalid runtime description", errors=[str(exc)]) from exc
