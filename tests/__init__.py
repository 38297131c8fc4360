"""
Dockyard Test Suite
===================

This package contains unit tests for the Dockyard orchestration layer.

Test Categories:
    - test_basic.py: Import tests, configuration and utilities
    - test_ipam.py: IP lease allocation
    - test_volumes.py: Volume lifecycle and mount reference counts
    - test_network.py: Bridge, veth and iptables command sequences
    - test_image_builder.py: Build, pull and rootfs extraction commands
    - test_oci.py: OCI bundle configuration
    - test_health.py: Health polling and restart policies
    - test_container.py: Container lifecycle and shutdown
    - test_cli.py: Command line interface

Running Tests:
    pytest tests/ -v

Note:
    External tools (runc, ip, iptables, buildah, ...) are never executed.
    Orchestration tests run against a FakeRunner that records argument
    vectors and returns scripted results, so no test needs root.
"""
