"""ARM template expression helpers — build ``[...]`` strings without typos."""

from __future__ import annotations

import re

RG_SCHEMA = "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
SUBSCRIPTION_SCHEMA = (
    "https://schema.management.azure.com/schemas/2018-05-01/subscriptionDeploymentTemplate.json#"
)


def _inner(expr: str) -> str:
    """Strip the outer brackets of an expression so it can be nested."""
    if expr.startswith("[") and expr.endswith("]"):
        return expr[1:-1]
    return "'" + expr.replace("'", "''") + "'"


def param(name: str) -> str:
    return f"[parameters('{name}')]"


def var(name: str) -> str:
    return f"[variables('{name}')]"


def call(func: str, *args: str) -> str:
    """``call("concat", param("a"), "x")`` → ``[concat(parameters('a'), 'x')]``."""
    return f"[{func}({', '.join(_inner(a) for a in args)})]"


def fmt(pattern: str, *args: str) -> str:
    return call("format", pattern, *args)


def resource_id(resource_type: str, *names: str) -> str:
    return call("resourceId", resource_type, *names)


def subscription_resource_id(resource_type: str, *names: str) -> str:
    return call("subscriptionResourceId", resource_type, *names)


def reference(target: str, api_version: str = "", full: bool = False) -> str:
    args = [target]
    if api_version:
        args.append(api_version)
    if full:
        args.append("Full")
    return call("reference", *args)


def prop(expr: str, path: str) -> str:
    """Append a property path to an expression: ``prop(reference(x), "ipAddress")``."""
    return f"[{_inner(expr)}.{path}]"


def referenced_names(expr: str) -> set[str]:
    """Names passed to ``parameters('...')`` inside an expression string."""
    return set(re.findall(r"parameters\('([^']+)'\)", expr))
