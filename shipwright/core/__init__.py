"""Shipwright core: job graph, scheduler, apply engine, rollout and registries."""
