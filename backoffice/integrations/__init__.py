"""backoffice.integrations — adapters to systems the back office drives.

Services never talk to an engine or external system directly; they go
through an adapter in this package so the implementation can be swapped
without touching orchestration code.

Current adapters:
  bpm_gateway.BpmEngine          — abstract BPM engine interface
  embedded_bpm.EmbeddedBpmEngine — SQL-backed sequential engine (default)
"""
