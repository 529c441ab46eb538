"""Unikernel fleet reconciler (ukfleet).

Control-plane core for a fleet of virtualized workloads:
 - reconciliation of a compose project (networks first, then machines)
 - artifact resolution: local catalog, remote catalog, then build + package
 - live watching of machine lifecycles until they reach a terminal state

Platform, network and catalog drivers sit behind narrow interfaces
(``ukfleet.drivers``); the Docker SDK implementation lives in ``ukfleet.docker_ops``.
"""
