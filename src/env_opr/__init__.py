"""Environment orchestration for merge-request deployments.

Builds the dependency graph of a service, resolves each node to an
ephemeral (merge-request scoped) or stable environment, plans batches and
runs them through the infrastructure engine, recording every node in the
ledger.
"""
