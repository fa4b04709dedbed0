"""Core process supervision and system proxy management.

This package contains the components of a supervised run:
- Process spawning, crash detection and reverse-order cleanup
- System proxy snapshot, apply and restore
- The run state machine tying both together
- Run configuration loading
- Exception handling

The command-line layer only resolves options and hands a run
configuration to this package.
"""
