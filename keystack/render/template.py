"""Structural checks for a rendered CloudFormation template.

CloudFormation YAML uses short-form intrinsic tags (``!Ref``, ``!GetAtt``,
``!Sub`` ...) that :func:`yaml.safe_load` rejects.  :class:`CfnLoader`
maps each of them to the equivalent long-form mapping so the document can
be walked as plain dicts and lists.
"""

from __future__ import annotations

import re
from typing import Any, Dict, FrozenSet, Iterator, List, Set, Tuple

import yaml

#: Resource types the stack must declare.
REQUIRED_RESOURCE_TYPES: FrozenSet[str] = frozenset(
    {
        "AWS::EC2::VPC",
        "AWS::EC2::Subnet",
        "AWS::EC2::SecurityGroup",
        "AWS::EC2::KeyPair",
        "AWS::EC2::Instance",
    },
)

#: Short-form tag → long-form key.
_INTRINSICS: Dict[str, str] = {
    "!Ref": "Ref",
    "!Condition": "Condition",
    "!GetAtt": "Fn::GetAtt",
    "!Sub": "Fn::Sub",
    "!Join": "Fn::Join",
    "!Select": "Fn::Select",
    "!Split": "Fn::Split",
    "!GetAZs": "Fn::GetAZs",
    "!If": "Fn::If",
    "!Equals": "Fn::Equals",
    "!Not": "Fn::Not",
    "!And": "Fn::And",
    "!Or": "Fn::Or",
    "!FindInMap": "Fn::FindInMap",
    "!Base64": "Fn::Base64",
    "!Cidr": "Fn::Cidr",
    "!ImportValue": "Fn::ImportValue",
}

_SUB_VAR_RE = re.compile(r"\$\{(?!!)([^}]+)\}")


class CfnLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form intrinsics."""


def _construct_intrinsic(loader: CfnLoader, tag_suffix: str, node: yaml.Node) -> Any:
    key = _INTRINSICS.get("!" + tag_suffix)
    if key is None:
        raise yaml.constructor.ConstructorError(
            None, None, f"unknown tag !{tag_suffix}", node.start_mark
        )
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
        if key == "Fn::GetAtt":
            value = value.split(".", 1)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {key: value}


CfnLoader.add_multi_constructor("!", _construct_intrinsic)


def load_cfn_yaml(text: str) -> Dict[str, Any]:
    """Parse CloudFormation YAML into long-form dicts.

    Raises:
        ValueError: On malformed YAML, unknown tags, or a non-mapping document.
    """
    try:
        doc = yaml.load(text, Loader=CfnLoader)
    except yaml.YAMLError as exc:
        raise ValueError(f"Template is not valid CloudFormation YAML: {exc}") from exc
    if not isinstance(doc, dict):
        raise ValueError("Template must be a YAML mapping")
    return doc


# ---------------------------------------------------------------------------
# Reference walking
# ---------------------------------------------------------------------------


def _walk_references(node: Any) -> Iterator[Tuple[str, str]]:
    """Yield ``(kind, target)`` for every reference found under *node*."""
    if isinstance(node, dict):
        if len(node) == 1:
            key, value = next(iter(node.items()))
            if key == "Ref" and isinstance(value, str):
                yield "Ref", value
                return
            if key == "Fn::GetAtt":
                target = value[0] if isinstance(value, list) and value else value
                if isinstance(target, str):
                    yield "Fn::GetAtt", target
                return
            if key == "Fn::Sub":
                yield from _sub_references(value)
                return
        for value in node.values():
            yield from _walk_references(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk_references(item)


def _sub_references(value: Any) -> Iterator[Tuple[str, str]]:
    if isinstance(value, list) and value:
        text = value[0]
        local_vars: Set[str] = set()
        if len(value) > 1 and isinstance(value[1], dict):
            local_vars = set(value[1])
            yield from _walk_references(value[1])
    else:
        text = value
        local_vars = set()
    if not isinstance(text, str):
        return
    for var in _SUB_VAR_RE.findall(text):
        name = var.split(".", 1)[0]
        if name not in local_vars:
            yield "Fn::Sub", name


def _depends_on(resource: Dict[str, Any]) -> List[str]:
    dep = resource.get("DependsOn")
    if dep is None:
        return []
    if isinstance(dep, str):
        return [dep]
    return [d for d in dep if isinstance(d, str)]


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def check_template(doc: Dict[str, Any]) -> List[str]:
    """Return a list of structural problems in *doc* (empty when valid).

    Checks:
    - a non-empty ``Resources`` mapping exists
    - every :data:`REQUIRED_RESOURCE_TYPES` entry is declared
    - every ``Ref`` / ``Fn::GetAtt`` / ``Fn::Sub`` variable names a
      parameter, a resource or an ``AWS::`` pseudo parameter
      (``Fn::GetAtt`` must name a resource)
    - every ``DependsOn`` names a resource
    - the key-pair resource carries ``PublicKeyMaterial``
    """
    problems: List[str] = []
    resources = doc.get("Resources")
    if not isinstance(resources, dict) or not resources:
        return ["Template has no Resources"]

    parameters = doc.get("Parameters") or {}
    resource_names = set(resources)
    ref_targets = resource_names | set(parameters)

    declared_types = {
        r.get("Type") for r in resources.values() if isinstance(r, dict)
    }
    for rtype in sorted(REQUIRED_RESOURCE_TYPES - declared_types):
        problems.append(f"Missing required resource of type {rtype}")

    sections = {"Resources": resources, "Outputs": doc.get("Outputs") or {}}
    for section, body in sections.items():
        for kind, target in _walk_references(body):
            if kind == "Fn::GetAtt":
                if target not in resource_names:
                    problems.append(
                        f"{section}: Fn::GetAtt references unknown resource '{target}'"
                    )
            elif target.startswith("AWS::"):
                continue
            elif target not in ref_targets:
                problems.append(
                    f"{section}: {kind} references unknown name '{target}'"
                )

    for name, resource in resources.items():
        if not isinstance(resource, dict) or "Type" not in resource:
            problems.append(f"Resource '{name}' has no Type")
            continue
        for dep in _depends_on(resource):
            if dep not in resource_names:
                problems.append(f"Resource '{name}' DependsOn unknown resource '{dep}'")
        if resource["Type"] == "AWS::EC2::KeyPair":
            props = resource.get("Properties") or {}
            if not props.get("PublicKeyMaterial"):
                problems.append(f"KeyPair '{name}' has no PublicKeyMaterial")

    return problems


def resources_by_type(doc: Dict[str, Any]) -> Dict[str, List[str]]:
    """Return ``{resource type: [logical ids]}`` for *doc*."""
    out: Dict[str, List[str]] = {}
    for name, resource in (doc.get("Resources") or {}).items():
        if isinstance(resource, dict):
            out.setdefault(resource.get("Type", ""), []).append(name)
    return out
