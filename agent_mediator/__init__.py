"""
Agent Mediator: capability mediation and session orchestration for coding agents.

The package gates every privileged action an autonomous agent takes behind a
permission decision that is attributable to a correlation id:

- ``permissions``: the permission engine and its append-only grant ledger.
- ``shell``: persistent shell sessions and the manager that owns them.
- ``mcp``: the MCP tool-server registry (register, connect, discover, invoke).
- ``capabilities``: the named capability catalog composing the above, with
  aggregate health, statistics and teardown.

Use :func:`agent_mediator.factory.build_capability_registry` to wire explicit
instances of every subsystem from :class:`agent_mediator.core.config.Settings`.
"""

__version__ = "0.1.0"
