"""Command line interface modules.

This package provides the command-line tools for:
- Running the core proxies and the edge proxy as one supervised run
- Inspecting the edge proxy endpoint the system proxy would point at
- Reporting errors and run outcomes

The command modules are thin wrappers around the run controller in
``coremesh.core``.
"""
