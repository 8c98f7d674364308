"""Source-side OSCAL document model.

Catalogs and profiles are read once per run and never mutated, so every
dataclass here is frozen. Parsing is lenient: unknown keys are ignored and
missing optional sections become empty tuples. Schema validation is not
attempted.

Type hierarchy:
  SourceDocument = Catalog | Profile
  Catalog        metadata, groups (nested), controls, back-matter
  Profile        metadata, imports, modify, back-matter
  Control        recursive (enhancements live in ``controls``)
  Part           recursive kind-tagged prose node
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from controlset.errors import DocumentFormatError

# ---------------------------------------------------------------------------
# Leaf types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Property:
    name: str
    value: str
    ns: str | None = None
    class_: str | None = None


@dataclass(frozen=True, slots=True)
class Link:
    href: str
    rel: str | None = None
    media_type: str | None = None
    text: str | None = None

    def to_dict(self) -> dict[str, str]:
        out = {"href": self.href}
        if self.rel is not None:
            out["rel"] = self.rel
        if self.media_type is not None:
            out["media-type"] = self.media_type
        if self.text is not None:
            out["text"] = self.text
        return out


@dataclass(frozen=True, slots=True)
class Parameter:
    id: str
    label: str | None = None
    usage: str | None = None
    values: tuple[str, ...] = ()
    guidelines: tuple[str, ...] = ()
    constraints: tuple[str, ...] = ()
    choices: tuple[str, ...] = ()
    how_many: str | None = None


@dataclass(frozen=True, slots=True)
class Part:
    """A recursive prose node inside a control.

    ``name`` carries the kind: statement, item, guidance, objective,
    assessment-objective, assessment, assessment-method, or anything else.
    """

    name: str
    id: str | None = None
    prose: str | None = None
    title: str | None = None
    props: tuple[Property, ...] = ()
    parts: tuple[Part, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.prose and not self.parts


@dataclass(frozen=True, slots=True)
class Control:
    id: str
    title: str
    class_: str | None = None
    params: tuple[Parameter, ...] = ()
    props: tuple[Property, ...] = ()
    links: tuple[Link, ...] = ()
    parts: tuple[Part, ...] = ()
    controls: tuple[Control, ...] = ()

    def prop(self, name: str) -> str | None:
        for p in self.props:
            if p.name == name:
                return p.value
        return None


@dataclass(frozen=True, slots=True)
class Group:
    title: str
    id: str | None = None
    class_: str | None = None
    controls: tuple[Control, ...] = ()
    groups: tuple[Group, ...] = ()


@dataclass(frozen=True, slots=True)
class ResourceLink:
    href: str
    media_type: str | None = None


@dataclass(frozen=True, slots=True)
class Resource:
    uuid: str
    title: str | None = None
    description: str | None = None
    citation: str | None = None
    rlinks: tuple[ResourceLink, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict[str, Any], compare=False)


@dataclass(frozen=True, slots=True)
class Metadata:
    title: str
    version: str = ""
    last_modified: str = ""
    oscal_version: str = ""
    props: tuple[Property, ...] = ()
    links: tuple[Link, ...] = ()
    roles: tuple[dict[str, Any], ...] = ()
    parties: tuple[dict[str, Any], ...] = ()
    responsible_parties: tuple[dict[str, Any], ...] = ()


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Catalog:
    uuid: str
    metadata: Metadata
    groups: tuple[Group, ...] = ()
    controls: tuple[Control, ...] = ()
    params: tuple[Parameter, ...] = ()
    back_matter: dict[str, Resource] = field(default_factory=dict[str, Resource])


@dataclass(frozen=True, slots=True)
class ImportSpec:
    """One profile import.

    ``include_ids`` is None when the import has no ``include-controls``;
    ``exclude_ids`` is None when it has no ``exclude-controls``.
    """

    href: str
    include_all: bool = False
    include_ids: frozenset[str] | None = None
    exclude_ids: frozenset[str] | None = None
    include_with_children: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class SetParameter:
    param_id: str
    values: tuple[str, ...] | None = None
    guidelines: tuple[str, ...] | None = None
    label: str | None = None


@dataclass(frozen=True, slots=True)
class Alter:
    control_id: str
    added_props: tuple[Property, ...] = ()


@dataclass(frozen=True, slots=True)
class Modify:
    set_parameters: tuple[SetParameter, ...] = ()
    alters: tuple[Alter, ...] = ()


@dataclass(frozen=True, slots=True)
class Profile:
    uuid: str
    metadata: Metadata
    imports: tuple[ImportSpec, ...] = ()
    modify: Modify | None = None
    back_matter: dict[str, Resource] = field(default_factory=dict[str, Resource])


type SourceDocument = Catalog | Profile


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _list(raw: dict[str, Any], key: str) -> list[Any]:
    value = raw.get(key)
    return value if isinstance(value, list) else []


def _parse_props(raw: dict[str, Any]) -> tuple[Property, ...]:
    return tuple(
        Property(
            name=str(p.get("name", "")),
            value=str(p.get("value", "")),
            ns=p.get("ns"),
            class_=p.get("class"),
        )
        for p in _list(raw, "props")
    )


def _parse_links(raw: dict[str, Any]) -> tuple[Link, ...]:
    return tuple(
        Link(
            href=str(link.get("href", "")),
            rel=link.get("rel"),
            media_type=link.get("media-type"),
            text=link.get("text"),
        )
        for link in _list(raw, "links")
    )


def parse_parameter(raw: dict[str, Any]) -> Parameter:
    select = raw.get("select") or {}
    return Parameter(
        id=str(raw.get("id", "")),
        label=raw.get("label"),
        usage=raw.get("usage"),
        values=tuple(str(v) for v in _list(raw, "values")),
        guidelines=tuple(
            str(g.get("prose", "")) for g in _list(raw, "guidelines") if g.get("prose")
        ),
        constraints=tuple(
            str(c.get("description", ""))
            for c in _list(raw, "constraints")
            if c.get("description")
        ),
        choices=tuple(str(c) for c in _list(select, "choice")),
        how_many=select.get("how-many"),
    )


def parse_part(raw: dict[str, Any]) -> Part:
    # Iterative post-order build so deep part trees never hit the recursion limit.
    built: dict[int, Part] = {}
    stack: list[tuple[dict[str, Any], bool]] = [(raw, False)]
    while stack:
        node, expanded = stack.pop()
        children = [c for c in _list(node, "parts") if isinstance(c, dict)]
        if not expanded:
            stack.append((node, True))
            for child in reversed(children):
                stack.append((child, False))
            continue
        built[id(node)] = Part(
            name=str(node.get("name", "")),
            id=node.get("id"),
            prose=node.get("prose"),
            title=node.get("title"),
            props=_parse_props(node),
            parts=tuple(built[id(c)] for c in children),
        )
    return built[id(raw)]


def parse_control(raw: dict[str, Any]) -> Control:
    built: dict[int, Control] = {}
    stack: list[tuple[dict[str, Any], bool]] = [(raw, False)]
    while stack:
        node, expanded = stack.pop()
        children = [c for c in _list(node, "controls") if isinstance(c, dict)]
        if not expanded:
            stack.append((node, True))
            for child in reversed(children):
                stack.append((child, False))
            continue
        built[id(node)] = Control(
            id=str(node.get("id", "")),
            title=str(node.get("title", "")),
            class_=node.get("class"),
            params=tuple(parse_parameter(p) for p in _list(node, "params")),
            props=_parse_props(node),
            links=_parse_links(node),
            parts=tuple(parse_part(p) for p in _list(node, "parts")),
            controls=tuple(built[id(c)] for c in children),
        )
    return built[id(raw)]


def parse_group(raw: dict[str, Any]) -> Group:
    built: dict[int, Group] = {}
    stack: list[tuple[dict[str, Any], bool]] = [(raw, False)]
    while stack:
        node, expanded = stack.pop()
        children = [g for g in _list(node, "groups") if isinstance(g, dict)]
        if not expanded:
            stack.append((node, True))
            for child in reversed(children):
                stack.append((child, False))
            continue
        built[id(node)] = Group(
            title=str(node.get("title", "")),
            id=node.get("id"),
            class_=node.get("class"),
            controls=tuple(parse_control(c) for c in _list(node, "controls")),
            groups=tuple(built[id(g)] for g in children),
        )
    return built[id(raw)]


def parse_metadata(raw: dict[str, Any]) -> Metadata:
    return Metadata(
        title=str(raw.get("title", "")),
        version=str(raw.get("version", "")),
        last_modified=str(raw.get("last-modified", "")),
        oscal_version=str(raw.get("oscal-version", "")),
        props=_parse_props(raw),
        links=_parse_links(raw),
        roles=tuple(_list(raw, "roles")),
        parties=tuple(_list(raw, "parties")),
        responsible_parties=tuple(_list(raw, "responsible-parties")),
    )


def parse_back_matter(raw: dict[str, Any] | None) -> dict[str, Resource]:
    resources: dict[str, Resource] = {}
    for res in _list(raw or {}, "resources"):
        citation = res.get("citation") or {}
        resources[str(res.get("uuid", ""))] = Resource(
            uuid=str(res.get("uuid", "")),
            title=res.get("title"),
            description=res.get("description"),
            citation=citation.get("text"),
            rlinks=tuple(
                ResourceLink(href=str(rl.get("href", "")), media_type=rl.get("media-type"))
                for rl in _list(res, "rlinks")
            ),
            raw=res,
        )
    return resources


def _collect_selection(
    clauses: list[Any],
) -> tuple[set[str], set[str]]:
    """Union ``with-ids`` lists and single ``control-id`` entries.

    Returns (ids, ids selected with child controls).
    """
    ids: set[str] = set()
    with_children: set[str] = set()
    for clause in clauses:
        if not isinstance(clause, dict):
            continue
        picked: list[str] = []
        if isinstance(clause.get("with-ids"), list):
            picked.extend(str(i) for i in clause["with-ids"])
        if clause.get("control-id"):
            picked.append(str(clause["control-id"]))
        ids.update(picked)
        if clause.get("with-child-controls") == "yes":
            with_children.update(picked)
    return ids, with_children


def parse_import(raw: dict[str, Any]) -> ImportSpec:
    include_ids: frozenset[str] | None = None
    exclude_ids: frozenset[str] | None = None
    with_children: set[str] = set()
    if "include-controls" in raw:
        ids, with_children = _collect_selection(_list(raw, "include-controls"))
        include_ids = frozenset(ids)
    if "exclude-controls" in raw:
        ids, _ = _collect_selection(_list(raw, "exclude-controls"))
        exclude_ids = frozenset(ids)
    return ImportSpec(
        href=str(raw.get("href", "")),
        include_all="include-all" in raw,
        include_ids=include_ids,
        exclude_ids=exclude_ids,
        include_with_children=frozenset(with_children),
    )


def parse_modify(raw: dict[str, Any]) -> Modify:
    set_params: list[SetParameter] = []
    for sp in _list(raw, "set-parameters"):
        guidelines = sp.get("guidelines")
        values = sp.get("values")
        set_params.append(
            SetParameter(
                param_id=str(sp.get("param-id", "")),
                values=tuple(str(v) for v in values) if isinstance(values, list) else None,
                guidelines=(
                    tuple(str(g.get("prose", "")) for g in guidelines)
                    if isinstance(guidelines, list)
                    else None
                ),
                label=sp.get("label"),
            )
        )
    alters: list[Alter] = []
    for alter in _list(raw, "alters"):
        added: list[Property] = []
        for add in _list(alter, "adds"):
            added.extend(_parse_props(add))
        alters.append(Alter(control_id=str(alter.get("control-id", "")), added_props=tuple(added)))
    return Modify(set_parameters=tuple(set_params), alters=tuple(alters))


def parse_document(payload: Any) -> SourceDocument:
    """Parse a decoded OSCAL payload into a Catalog or a Profile.

    Raises DocumentFormatError when the payload has neither a ``catalog``
    nor a ``profile`` root.
    """
    if isinstance(payload, dict) and isinstance(payload.get("catalog"), dict):
        raw = payload["catalog"]
        return Catalog(
            uuid=str(raw.get("uuid", "")),
            metadata=parse_metadata(raw.get("metadata") or {}),
            groups=tuple(parse_group(g) for g in _list(raw, "groups")),
            controls=tuple(parse_control(c) for c in _list(raw, "controls")),
            params=tuple(parse_parameter(p) for p in _list(raw, "params")),
            back_matter=parse_back_matter(raw.get("back-matter")),
        )
    if isinstance(payload, dict) and isinstance(payload.get("profile"), dict):
        raw = payload["profile"]
        modify = raw.get("modify")
        return Profile(
            uuid=str(raw.get("uuid", "")),
            metadata=parse_metadata(raw.get("metadata") or {}),
            imports=tuple(parse_import(i) for i in _list(raw, "imports")),
            modify=parse_modify(modify) if isinstance(modify, dict) else None,
            back_matter=parse_back_matter(raw.get("back-matter")),
        )
    raise DocumentFormatError(
        "Input must be an OSCAL catalog or profile "
        "(expected a 'catalog' or 'profile' root element)"
    )
