"""Control-Plane Reconciler (CPR).

Status computation and remediation engine for a fleet of consensus-backed
control-plane replicas:
 - aggregates per-replica facts into fleet counters and version state
 - follows in-place (update plan) and recreate upgrade strategies
 - balances new replicas across failure domains
 - remediates one unhealthy replica at a time without losing quorum
"""
