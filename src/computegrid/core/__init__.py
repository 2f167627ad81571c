"""
Compute grid core: task store, generation, dispatch, consensus and trust.

Everything here is transport-agnostic; the HTTP adapter and CLI sit on top
of computegrid.service.GridService.
"""
