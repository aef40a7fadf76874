"""
Telemetry acquisition and charging-analytics core for EV diagnostic adapters.

Talks to an ELM327-compatible adapter over serial, TCP or RFCOMM, polls a
vehicle profile's parameters on a priority schedule, decodes the vendor
payloads, and turns the resulting snapshots into charging sessions.

CHANGELOG:
- 2026-10-18: Initial creation

TODO:
- None
"""
