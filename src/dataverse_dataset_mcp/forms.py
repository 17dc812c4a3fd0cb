# Dataverse Dataset MCP Server
# File: forms.py
# Version: v1

"""Find the system forms that host a given custom control.

Forms are scanned from ``systemforms`` and their form XML is parsed for
``<customControl name="prefix_Namespace.Constructor">`` entries (and the
legacy ``<customcontrol namespace=".." constructor="..">`` shape). Results
are cached in the shared discovery cache.
"""

from __future__ import annotations

import logging
import re
import xml.etree.ElementTree as ET
from typing import Dict, List, Optional, Tuple

from .cache import DiscoveryCache, make_key
from .client import DataverseClient
from .models import FormControl, FormDataSet, FormMatch

logger = logging.getLogger(__name__)

# Substrings that every form hosting a custom control carries.
CUSTOM_CONTROL_MARKERS = ("customControl", "customcontroldefinition")

_PUBLISHER_PREFIX = re.compile(r"^[^_]+_")


def split_control_name(name: str) -> Tuple[str, str]:
    """``prefix_Namespace.Constructor`` -> ``("Namespace", "Constructor")``."""
    if "." in name:
        namespace, _, constructor = name.partition(".")
        return _PUBLISHER_PREFIX.sub("", namespace), constructor
    return "", name


def _text(parent: ET.Element, tag: str) -> Optional[str]:
    element = parent.find(tag)
    if element is None or element.text is None:
        return None
    return element.text.strip() or None


def _data_set(parameters: ET.Element) -> Optional[FormDataSet]:
    element = parameters.find("data-set")
    if element is None:
        return None
    filtered = _text(element, "FilteredViewIds") or ""
    return FormDataSet(
        name=element.get("name") or "",
        view_id=_text(element, "ViewId"),
        is_user_view=_text(element, "IsUserView") == "true",
        target_entity=_text(element, "TargetEntityType"),
        relationship_name=_text(element, "RelationshipName"),
        enable_view_picker=_text(element, "EnableViewPicker") == "true",
        filtered_view_ids=[v.strip() for v in filtered.split(",") if v.strip()],
    )


def _parameters(parameters: ET.Element) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for child in parameters:
        if child.tag == "data-set":
            continue
        text = (child.text or "").strip()
        out[child.tag] = text or ET.tostring(child, encoding="unicode")
    return out


def parse_form_controls(form_xml: Optional[str]) -> List[FormControl]:
    """Every custom control declared in a form document.

    Unparseable documents yield an empty list.
    """
    if not form_xml:
        return []
    try:
        root = ET.fromstring(form_xml)
    except ET.ParseError as exc:
        logger.warning("Skipping unparseable form XML: %s", exc)
        return []

    parents = {child: parent for parent in root.iter() for child in parent}

    def control_id_of(element: ET.Element) -> Optional[str]:
        node = parents.get(element)
        while node is not None:
            if node.tag == "controlDescription" and node.get("forControl"):
                return node.get("forControl")
            if node.tag == "control" and node.get("id"):
                return node.get("id")
            node = parents.get(node)
        return None

    controls: List[FormControl] = []
    for element in root.iter("customcontrol"):
        namespace = element.get("namespace") or ""
        constructor = element.get("constructor") or ""
        if not (namespace or constructor):
            continue
        controls.append(
            FormControl(
                control_id=control_id_of(element),
                name=f"{namespace}.{constructor}",
                namespace=namespace,
                constructor=constructor,
                version=element.get("version"),
                form_factor="0",
            )
        )

    for element in root.iter("customControl"):
        name = element.get("name") or ""
        namespace, constructor = split_control_name(name)
        if not (namespace or constructor):
            continue
        control = FormControl(
            control_id=control_id_of(element),
            name=name,
            namespace=namespace,
            constructor=constructor,
            version=element.get("version"),
            form_factor=element.get("formFactor") or "0",
        )
        parameters = element.find("parameters")
        if parameters is not None:
            control.data_set = _data_set(parameters)
            control.parameters = _parameters(parameters)
        controls.append(control)

    return controls


class FormDiscoveryService:
    def __init__(
        self,
        client: DataverseClient,
        cache: Optional[DiscoveryCache] = None,
        publisher_prefix: Optional[str] = None,
    ) -> None:
        self._client = client
        self._cache = cache
        self.publisher_prefix = publisher_prefix

    async def discover_forms(
        self,
        control_name: str,
        entity_name: Optional[str] = None,
        publisher: Optional[str] = None,
    ) -> List[FormMatch]:
        """Forms hosting ``control_name`` (``Namespace.Constructor``).

        Transport errors propagate; an empty list means no form hosts the
        control.
        """
        publisher = publisher or self.publisher_prefix
        key = make_key(
            "forms", control_name, publisher or "no-publisher", entity_name or "no-entity"
        )
        if self._cache is not None:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Form discovery cache hit for %s", key)
                return list(cached)

        namespace, constructor = split_control_name(control_name)
        rows = await self._client.list_system_forms(
            entity_name=entity_name,
            contains=list(CUSTOM_CONTROL_MARKERS),
            publisher=publisher,
        )
        logger.info("Scanning %d form(s) with custom controls", len(rows))

        matches: List[FormMatch] = []
        for row in rows:
            hosted = [
                c
                for c in parse_form_controls(row.get("formxml"))
                if c.constructor == constructor and (not namespace or c.namespace == namespace)
            ]
            if not hosted:
                continue
            matches.append(
                FormMatch(
                    form_id=str(row.get("formid")),
                    form_name=row.get("name") or "",
                    entity_name=row.get("objecttypecode"),
                    controls=hosted,
                )
            )

        logger.info("Found %d form(s) hosting %s", len(matches), control_name)
        if self._cache is not None:
            self._cache.set(key, tuple(matches))
        return matches

    async def get_controls_on_forms(self, entity_name: str) -> List[FormMatch]:
        """Every form of ``entity_name`` together with its custom controls."""
        rows = await self._client.list_system_forms(
            entity_name=entity_name, contains=list(CUSTOM_CONTROL_MARKERS)
        )
        out = []
        for row in rows:
            controls = parse_form_controls(row.get("formxml"))
            if controls:
                out.append(
                    FormMatch(
                        form_id=str(row.get("formid")),
                        form_name=row.get("name") or "",
                        entity_name=row.get("objecttypecode"),
                        controls=controls,
                    )
                )
        return out
