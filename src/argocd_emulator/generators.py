# ABOUTME: ApplicationSet generator expansion and template rendering
# ABOUTME: Turns List, Git and Cluster generators into parameter rows and renders one Application per row

"""
ApplicationSet generators.

=============================================================================
EXPANSION
=============================================================================

Each generator produces rows, flat ``dict[str, str]`` parameter maps:

    list      each element verbatim, in order, duplicates kept
    git       one row per matching directory or file from the resolver:
                  {"path": "apps/web", "path.basename": "web",
                   "path.basenameNormalized": "web"}
              file rows also carry the file's (flattened) parameters and
              "path.filename" / "path.filenameNormalized"
    clusters  one row per cluster whose labels match the selector:
                  {"name": "prod-eu", "server": "https://...",
                   "metadata.labels.env": "prod"}
              merged with the generator's static ``values`` (values win)

A set with several generators gets the UNION of their rows, in generator
order. Rows coming from Git and Cluster generators are deduplicated; list
rows never are.

A generator whose collaborator fails contributes no rows and one error. The
other generators still expand.

=============================================================================
RENDERING
=============================================================================

Two placeholder dialects, chosen by ``ApplicationSet.go_template``:

    fasttemplate (default)  {{env}}  {{path.basename}}
    Go template             {{ .env }}  {{ .path.basename }}  {{ index . "env" }}

Every string of the template is rendered, including nested fields such as
``destination.namespace`` and hook names. A row that leaves a placeholder
unresolved, or renders an invalid Application (a name that is not a DNS-1123
label, say), is skipped with a warning.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError as PydanticValidationError

from argocd_emulator.errors import GeneratorError, ValidationError
from argocd_emulator.models import Application

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from argocd_emulator.models import (
        ApplicationSet,
        ApplicationTemplate,
        Cluster,
        ClusterGenerator,
        GitGenerator,
        ListGenerator,
    )
    from argocd_emulator.utils.resolver import RepositoryResolver

logger = structlog.get_logger(__name__)

Row = dict[str, str]

_FAST_PLACEHOLDER = re.compile(r"\{\{\s*([^{}\s]+)\s*\}\}")
_GO_PLACEHOLDER = re.compile(
    r"\{\{-?\s*(?:\.(?P<dot>[\w.\-]+)|index\s+\.\s+\"(?P<index>[^\"]+)\")\s*-?\}\}"
)
_NORMALIZE = re.compile(r"[^a-z0-9\-.]+")


@dataclass
class ExpansionRows:
    rows: list[Row] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass
class ExpansionResult:
    applications: list[Application] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def names(self) -> list[str]:
        return [app.name for app in self.applications]


def normalize(value: str) -> str:
    """Lowercase and replace characters not allowed in a DNS name with '-'."""
    return _NORMALIZE.sub("-", value.lower()).strip("-.")


def _flatten(params: dict[str, Any], prefix: str = "") -> Row:
    flat: Row = {}
    for key, value in params.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, f"{name}."))
        else:
            flat[name] = "" if value is None else str(value)
    return flat


# =============================================================================
# PER-GENERATOR EXPANSION
# =============================================================================


def _expand_list(generator: ListGenerator) -> list[Row]:
    return [dict(element) for element in generator.elements]


async def _expand_git(generator: GitGenerator, resolver: RepositoryResolver) -> list[Row]:
    rows: list[Row] = []

    if generator.directories:
        listed = await resolver.list_directories(generator.repo_url, generator.revision)
        include = [d.path for d in generator.directories if not d.exclude]
        exclude = [d.path for d in generator.directories if d.exclude]
        for path in sorted(listed):
            if not any(fnmatchcase(path, p) for p in include):
                continue
            if any(fnmatchcase(path, p) for p in exclude):
                continue
            basename = posixpath.basename(path.rstrip("/"))
            rows.append(
                {
                    "path": path,
                    "path.basename": basename,
                    "path.basenameNormalized": normalize(basename),
                }
            )

    if generator.files:
        listed_files = await resolver.list_files(generator.repo_url, generator.revision)
        for declared in generator.files:
            for path in sorted(p for p in listed_files if fnmatchcase(p, declared.path)):
                directory = posixpath.dirname(path)
                filename = posixpath.basename(path)
                basename = posixpath.basename(directory)
                row = _flatten(listed_files[path])
                row.update(
                    {
                        "path": directory,
                        "path.basename": basename,
                        "path.basenameNormalized": normalize(basename),
                        "path.filename": filename,
                        "path.filenameNormalized": normalize(filename),
                    }
                )
                rows.append(row)

    return rows


def _expand_clusters(generator: ClusterGenerator, clusters: Iterable[Cluster]) -> list[Row]:
    rows: list[Row] = []
    wanted = generator.selector.match_labels
    for cluster in sorted(clusters, key=lambda c: c.name):
        if any(cluster.labels.get(k) != v for k, v in wanted.items()):
            continue
        row: Row = {"name": cluster.name, "server": cluster.server}
        row.update({f"metadata.labels.{k}": v for k, v in cluster.labels.items()})
        row.update({f"values.{k}": v for k, v in generator.values.items()})
        row.update(generator.values)
        rows.append(row)
    return rows


async def expand(
    generators: Sequence[ListGenerator | GitGenerator | ClusterGenerator],
    resolver: RepositoryResolver,
    clusters: Iterable[Cluster] = (),
) -> ExpansionRows:
    """
    Expand generators into the union of their rows.

    Args:
        generators: Generators in declaration order
        resolver: Git collaborator used by git generators
        clusters: Registered clusters for cluster generators

    Returns:
        ExpansionRows with the rows and one error per failed generator
    """
    result = ExpansionRows()
    seen: set[tuple[tuple[str, str], ...]] = set()
    clusters = list(clusters)

    for index, generator in enumerate(generators):
        try:
            if generator.type == "list":
                produced = _expand_list(generator)
            elif generator.type == "git":
                produced = await _expand_git(generator, resolver)
            else:
                produced = _expand_clusters(generator, clusters)
        except GeneratorError as e:
            message = f"generator #{index} ({generator.type}): {e}"
            logger.warning("generator_failed", index=index, generator=generator.type, error=str(e))
            result.errors.append(message)
            continue

        for row in produced:
            key = tuple(sorted(row.items()))
            if generator.type != "list" and key in seen:
                continue
            seen.add(key)
            result.rows.append(row)

    return result


# =============================================================================
# RENDERING
# =============================================================================


def _substitute(text: str, row: Row, go_template: bool) -> str:
    missing: list[str] = []
    pattern = _GO_PLACEHOLDER if go_template else _FAST_PLACEHOLDER

    def replace(match: re.Match[str]) -> str:
        key = (match.group("dot") or match.group("index")) if go_template else match.group(1)
        if key not in row:
            missing.append(key)
            return match.group(0)
        return row[key]

    rendered = pattern.sub(replace, text)
    if missing:
        raise ValidationError(f"unresolved placeholder(s): {', '.join(sorted(set(missing)))}")
    if "{{" in rendered:
        raise ValidationError(f"unsupported template expression in '{text}'")
    return rendered


def _render_value(value: Any, row: Row, go_template: bool) -> Any:
    if isinstance(value, str):
        return _substitute(value, row, go_template)
    if isinstance(value, dict):
        return {k: _render_value(v, row, go_template) for k, v in value.items()}
    if isinstance(value, list):
        return [_render_value(v, row, go_template) for v in value]
    return value


def render(template: ApplicationTemplate, row: Row, go_template: bool = False) -> Application:
    """
    Render one Application from a template and a parameter row.

    Raises:
        ValidationError: on an unresolved placeholder or an invalid result
    """
    data = _render_value(template.model_dump(), row, go_template)
    try:
        return Application.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"rendered application '{data.get('name')}' is invalid", problems) from e


async def expand_application_set(
    appset: ApplicationSet,
    resolver: RepositoryResolver,
    clusters: Iterable[Cluster] = (),
) -> ExpansionResult:
    """
    Expand an ApplicationSet into the Applications it should own.

    Applications come back in row order, tagged with the set as owner and
    carrying the set's sync policy. Running this twice on unchanged inputs
    yields the same names in the same order.
    """
    expanded = await expand(appset.generators, resolver, clusters)
    result = ExpansionResult(errors=list(expanded.errors))
    names: set[str] = set()

    for index, row in enumerate(expanded.rows):
        try:
            app = render(appset.template, row, appset.go_template)
        except ValidationError as e:
            result.warnings.append(f"row {index} skipped: {e}")
            continue
        if app.name in names:
            result.warnings.append(f"row {index} skipped: application '{app.name}' already generated")
            continue
        names.add(app.name)
        result.applications.append(
            app.model_copy(update={"owner": appset.name, "sync_policy": appset.sync_policy.model_copy()})
        )

    if result.warnings:
        logger.info("appset_rows_skipped", appset=appset.name, skipped=len(result.warnings))
    return result
