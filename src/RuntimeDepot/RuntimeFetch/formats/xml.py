"""XML codec for runtime repository index documents.

Documents live in the ``urn:runtimedepot:xml:1.0`` namespace::

    <c:runtime-repository id="https://example.org/index" updated="2024-01-01T00:00:00+00:00">
      <c:runtimes>
        <c:runtime architecture="x64" archive="https://..." archiveSize="1024"
                   configuration="jdk" platform="linux" version="11.0.2+9" vm="hotspot">
          <c:hash algorithm="SHA-256" value="..."/>
          <c:tags><c:tag name="production"/></c:tags>
          <c:build number="b9" time="2019-01-15T00:00:00+00:00"/>
        </c:runtime>
      </c:runtimes>
    </c:runtime-repository>

A ``runtime`` element inside a repository document may omit its
``repository`` attribute; it then inherits the document ``id``.
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from datetime import datetime
from typing import List, Optional

from ..errors import FormatError
from ..runtime import (
    RuntimeBuild,
    RuntimeConfiguration,
    RuntimeDescription,
    RuntimeHash,
    RuntimeRepositoryDescription,
    RuntimeVersion,
)

__all__ = ["XML_CONTENT_TYPE", "XML_NAMESPACE", "XMLCodec"]

XML_CONTENT_TYPE = "application/runtimedepot+xml"
XML_NAMESPACE = "urn:runtimedepot:xml:1.0"

_NS = {"c": XML_NAMESPACE}

ET.register_namespace("c", XML_NAMESPACE)


def _tag(name: str) -> str:
    return f"{{{XML_NAMESPACE}}}{name}"


def _parse_document(data: bytes) -> ET.Element:
    try:
        return ET.fromstring(data)
    except ET.ParseError as exc:
        raise FormatError("malformed XML document", errors=[str(exc)]) from exc


def _runtime_element(
    description: RuntimeDescription, *, include_repository: bool = True
) -> ET.Element:
    attributes = {
        "architecture": description.architecture,
        "archive": description.archive_uri,
        "archiveSize": str(description.archive_size),
        "configuration": description.configuration.value,
        "platform": description.platform,
        "version": description.version.to_external_string(),
        "vm": description.vm,
    }
    if include_repository:
        attributes["repository"] = description.repository
    element = ET.Element(_tag("runtime"), attributes)
    ET.SubElement(
        element,
        _tag("hash"),
        {"algorithm": description.archive_hash.algorithm, "value": description.archive_hash.value},
    )
    tags = ET.SubElement(element, _tag("tags"))
    for name in sorted(description.tags):
        ET.SubElement(tags, _tag("tag"), {"name": name})
    if description.build is not None:
        ET.SubElement(
            element,
            _tag("build"),
            {"number": description.build.number, "time": description.build.time.isoformat()},
        )
    return element


def _read_runtime(
    element: ET.Element,
    default_repository: Optional[str],
    errors: List[str],
) -> Optional[RuntimeDescription]:
    problems: List[str] = []
    where = element.get("archive") or "<runtime>"

    def attribute(name: str) -> Optional[str]:
        value = element.get(name)
        if value is None:
            problems.append(f"{where}: missing attribute {name!r}")
        return value

    def convert(name: str, parser):
        raw = attribute(name)
        if raw is None:
            return None
        try:
            return parser(raw)
        except ValueError as exc:
            problems.append(f"{where}: {name}: {exc}")
            return None

    repository = element.get("repository") or default_repository
    if repository is None:
        problems.append(f"{where}: missing attribute 'repository'")
    architecture = attribute("architecture")
    archive = attribute("archive")
    archive_size = convert("archiveSize", int)
    configuration = convert("configuration", RuntimeConfiguration.parse)
    platform = attribute("platform")
    version = convert("version", RuntimeVersion.parse)
    vm = attribute("vm")

    archive_hash = None
    hash_element = element.find("c:hash", _NS)
    if hash_element is None:
        problems.append(f"{where}: missing hash element")
    else:
        try:
            archive_hash = RuntimeHash(hash_element.get("algorithm", ""), hash_element.get("value", ""))
        except ValueError as exc:
            problems.append(f"{where}: hash: {exc}")

    tags = frozenset(
        tag.get("name", "") for tag in element.findall("c:tags/c:tag", _NS) if tag.get("name")
    )

    build = None
    build_element = element.find("c:build", _NS)
    if build_element is not None:
        try:
            build = RuntimeBuild(
                number=build_element.get("number", ""),
                time=datetime.fromisoformat(build_element.get("time", "")),
            )
        except ValueError as exc:
            problems.append(f"{where}: build: {exc}")

    if problems:
        errors.extend(problems)
        return None
    try:
        return RuntimeDescription(
            repository=repository,
            version=version,
            platform=platform,
            architecture=architecture,
            vm=vm,
            configuration=configuration,
            archive_uri=archive,
            archive_size=archive_size,
            archive_hash=archive_hash,
            tags=tags,
            build=build,
        )
    except ValueError as exc:
        errors.append(f"{where}: {exc}")
        return None


class XMLCodec:
    """Codec for single runtimes and whole repository index documents."""

    content_type = XML_CONTENT_TYPE

    def serialize(self, description: RuntimeDescription) -> bytes:
        return ET.tostring(_runtime_element(description), encoding="utf-8", xml_declaration=True)

    def parse(self, data: bytes) -> RuntimeDescription:
        root = _parse_document(data)
        if root.tag != _tag("runtime"):
            raise FormatError(f"expected a runtime element, found {root.tag!r}")
        errors: List[str] = []
        description = _read_runtime(root, None, errors)
        if description is None:
            raise FormatError("invalid runtime element", errors=errors)
        return description

    def serialize_repository(self, repository: RuntimeRepositoryDescription) -> bytes:
        attributes = {"id": repository.id}
        if repository.updated is not None:
            attributes["updated"] = repository.updated.isoformat()
        root = ET.Element(_tag("runtime-repository"), attributes)
        runtimes = ET.SubElement(root, _tag("runtimes"))
        for key in sorted(repository.runtimes):
            description = repository.runtimes[key]
            runtimes.append(
                _runtime_element(description, include_repository=description.repository != repository.id)
            )
        return ET.tostring(root, encoding="utf-8", xml_declaration=True)

    def parse_repository(self, data: bytes) -> RuntimeRepositoryDescription:
        """Parse a repository document, reporting every invalid runtime at once."""

        root = _parse_document(data)
        if root.tag != _tag("runtime-repository"):
            raise FormatError(f"expected a runtime-repository element, found {root.tag!r}")
        repository_id = root.get("id")
        errors: List[str] = []
        if not repository_id:
            errors.append("runtime-repository: missing attribute 'id'")
        updated = None
        if root.get("updated"):
            try:
                updated = datetime.fromisoformat(root.get("updated", ""))
            except ValueError as exc:
                errors.append(f"runtime-repository: updated: {exc}")

        runtimes = {}
        for element in root.findall("c:runtimes/c:runtime", _NS):
            description = _read_runtime(element, repository_id, errors)
            if description is not None:
                runtimes[description.id] = description
        if errors:
            raise FormatError("invalid runtime repository document", errors=errors)
        return RuntimeRepositoryDescription(id=repository_id, updated=updated, runtimes=runtimes)
