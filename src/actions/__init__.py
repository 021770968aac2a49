"""Infrastructure engine actions."""

from actions.tofu import (
    TofuExecutor,
    clean,
    render_backend,
)

__all__ = [
    'TofuExecutor',
    'clean',
    'render_backend',
]
