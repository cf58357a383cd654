#!/usr/bin/env python3
"""
Materialize the application .env for a stage into {deploy_path}/shared/.env.
"""

from .utils import quote_path
from ..config.secrets import build_environment, env_to_string

ENV_FILE_MODE = '640'
SENSITIVE_KEYS = ('PASSWORD', 'SECRET', 'KEY', 'TOKEN')


def render_env(ctx):
    """Build the resolved env map for the context's stage (pure)."""
    return build_environment(
        ctx.get('env_base'),
        ctx.get('shared_env', {}),
        ctx.get('env_overrides', {}),
        ctx.get('secrets'),
        strict=bool(ctx.get('env_strict', False)),
        required_keys=ctx.get('env_required', [])
    )


def env_path(ctx):
    return f"{ctx.get('deploy_path')}/shared/.env"


def write_env(executor, ctx):
    """Write the .env through the secret channel (never echoed) and restrict it to owner/group."""
    env = render_env(ctx)
    path = env_path(ctx)
    executor.run_check(f"mkdir -p {quote_path(ctx.get('deploy_path'))}/shared")
    executor.write_file(path, env_to_string(env), mode=ENV_FILE_MODE, sensitive=True)
    print(f"✓ Generated .env for: {ctx.stage}")
    return path


def masked_env(env):
    """Copy of env safe to display."""
    return {
        key: ('********' if any(marker in key for marker in SENSITIVE_KEYS) and value not in ('', 'null') else value)
        for key, value in env.items()
    }
