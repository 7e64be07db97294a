# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/clusterbed/errors.py
class ClusterBedError(RuntimeError):
    """Base class for cluster bootstrap failures."""

class CryptoFailure(ClusterBedError):
    """Raised when key/cert generation, signing or parsing fails."""

class IOFailure(ClusterBedError):
    """Raised when an artifact cannot be persisted to the work dir."""

class ProcessStartFailure(ClusterBedError):
    """Raised when a node could not be launched or its endpoint is unknown."""

class ProtocolFailure(ClusterBedError):
    """Raised on nil/malformed admin responses or unexpected cluster state."""

class TimeoutFailure(ClusterBedError):
    """Raised when a deadline expires before a polled condition holds."""
