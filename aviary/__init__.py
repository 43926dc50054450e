"""Aviary: bird demo services for service-mesh and tracing demos.

Two small FastAPI services:
 - backend: serves one bird per request from an embedded dataset, with
   optional synthetic delay and error injection via query params
 - frontend: renders a UI and proxies /shuffle to the backend's /bird

The implementation is intentionally small so it can be audited and explained.
"""
