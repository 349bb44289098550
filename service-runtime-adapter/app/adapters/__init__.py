"""Adapters to the backend inference server.

The backend is only reachable through its REST config endpoints; this
subpackage keeps the wire format, status codes and polling policy in one
place so the runtime layer deals in parsed status reports and typed errors.
"""
