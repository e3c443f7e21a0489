"""Zero-touch device enrollment for first-boot setup.

This package drives a device from first boot to a registered, managed
machine, providing:
- A checkpointed deployment state machine that resumes after restarts
- Bounded retry with exponential backoff for remote calls
- Certificate retrieval and lifecycle validation for app authentication
- Stale record cleanup across directory, management and provisioning systems
- A phase orchestrator tying these together
"""
