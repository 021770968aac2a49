"""Output collection and .env generation.

Outputs come from the ledger only, so they are available without running
the engine. A merge request's outputs include those of the stable
environments it binds to.

Template format (one variable per line, '#' comments allowed):

    DATABASE_URL=database.url
    API_URL=api_url

A value naming `service.output` reads that service's output; a bare
`output` searches every service and must be unambiguous. Values that name
no output are copied through unchanged.
"""

import json
import logging
from pathlib import Path
from typing import Any

from env_opr.ledger import Ledger
from errors import ConfigError

logger = logging.getLogger(__name__)


def collect_outputs(ledger: Ledger, scope: str) -> dict[str, dict[str, Any]]:
    """Outputs per service for one scope, from applied entries only."""
    return {
        entry.service_name: dict(entry.outputs)
        for entry in ledger.list(scope)
        if entry.status == 'applied'
    }


def write_outputs(outputs: dict[str, dict[str, Any]], path: Path) -> Path:
    """Write combined outputs as JSON."""
    path = Path(path)
    path.write_text(json.dumps(outputs, indent=2, sort_keys=True) + '\n', encoding='utf-8')
    logger.info(f"Wrote outputs to {path}")
    return path


def lookup_output(outputs: dict[str, dict[str, Any]], reference: str) -> tuple[bool, Any]:
    """Find an output by 'service.output' or bare 'output'.

    Returns (found, value).

    Raises:
        ConfigError: If a bare name matches outputs of several services
    """
    if '.' in reference:
        service, _, name = reference.partition('.')
        if service in outputs and name in outputs[service]:
            return True, outputs[service][name]
    matches = sorted(s for s, values in outputs.items() if reference in values)
    if len(matches) > 1:
        raise ConfigError(
            f"Output '{reference}' is ambiguous ({', '.join(matches)}); use service.{reference}")
    if matches:
        return True, outputs[matches[0]][reference]
    return False, None


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if value is None:
        return ''
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, sort_keys=True)


def render_env(template: str, outputs: dict[str, dict[str, Any]]) -> str:
    """Render a .env template against collected outputs."""
    lines = []
    for lineno, raw in enumerate(template.splitlines(), 1):
        line = raw.strip()
        if not line or line.startswith('#'):
            lines.append(raw)
            continue
        if '=' not in line:
            raise ConfigError(f"Template line {lineno}: expected NAME=reference, got '{line}'")
        name, _, reference = line.partition('=')
        name, reference = name.strip(), reference.strip()
        found, value = lookup_output(outputs, reference)
        if not found:
            logger.debug(f"Template line {lineno}: '{reference}' is not an output, kept literally")
            value = reference
        lines.append(f'{name}={_format_value(value)}')
    return '\n'.join(lines) + '\n'


def generate_env(ledger: Ledger, scope: str, template: Path, target: Path) -> Path:
    """Render template into target using the outputs recorded for scope."""
    try:
        text = Path(template).read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot read template {template}: {e}") from e
    rendered = render_env(text, collect_outputs(ledger, scope))
    target = Path(target)
    target.write_text(rendered, encoding='utf-8')
    logger.info(f"Generated {target} from {template}")
    return target
