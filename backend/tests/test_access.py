"""Tests for the export access gate.

Checks run identity first, geometry type second and room permission last;
the first failure decides the denial.
"""

from __future__ import annotations

import pytest

from datalayer_export.core import errors
from datalayer_export.db import database
from datalayer_export.db import models as db_models
from datalayer_export.services import access


def _gate(repo: database.InMemoryDatalayerRepository) -> access.AccessGate:
    return access.AccessGate(repo, "IncidentMap")


def test_authorized_user(repo: database.InMemoryDatalayerRepository) -> None:
    """Test that a permitted user gets the parsed geometry type back."""
    decision = _gate(repo).authorize(7, 7, 12, 3, "POINT")
    assert decision == access.Authorized(db_models.GeometryType.POINT)


def test_identity_mismatch(repo: database.InMemoryDatalayerRepository) -> None:
    """Test that a user cannot export as somebody else."""
    decision = _gate(repo).authorize(5, 9, 12, 3, "point")
    assert decision == access.Denied(access.DenialReason.IDENTITY_MISMATCH)
    error = decision.to_error()
    assert isinstance(error, errors.IdentityMismatch)
    assert "permission" in error.message
    assert error.status == 400


def test_unknown_session_user(repo: database.InMemoryDatalayerRepository) -> None:
    """Test that an unresolved session user is treated as a mismatch."""
    decision = _gate(repo).authorize(None, 7, 12, 3, "point")
    assert decision == access.Denied(access.DenialReason.IDENTITY_MISMATCH)


def test_identity_checked_before_type(
    repo: database.InMemoryDatalayerRepository,
) -> None:
    """Test that identity wins over an invalid geometry type."""
    decision = _gate(repo).authorize(5, 9, 12, 3, "hexagonal")
    assert decision == access.Denied(access.DenialReason.IDENTITY_MISMATCH)


@pytest.mark.parametrize("geometry_type", ["hexagonal", "", "points", "sketch"])
def test_invalid_geometry_type(
    repo: database.InMemoryDatalayerRepository, geometry_type: str
) -> None:
    """Test that unknown geometry types are refused with a 400."""
    decision = _gate(repo).authorize(7, 7, 12, 3, geometry_type)
    assert decision == access.Denied(access.DenialReason.INVALID_GEOMETRY_TYPE)
    assert decision.to_error().status == 400


def test_permission_denied(repo: database.InMemoryDatalayerRepository) -> None:
    """Test that a room without a grant is refused with a 401."""
    decision = _gate(repo).authorize(7, 7, 30, 3, "all")
    assert decision == access.Denied(access.DenialReason.PERMISSION_DENIED)
    assert decision.to_error().status == 401


def test_incident_map_is_open(repo: database.InMemoryDatalayerRepository) -> None:
    """Test that the incident map room is readable without a grant."""
    decision = _gate(repo).authorize(5, 5, 20, 3, "line")
    assert decision == access.Authorized(db_models.GeometryType.LINE)


def test_permission_lookup_error_denies(
    repo: database.InMemoryDatalayerRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a failing permission lookup counts as no permission."""

    def broken(*_args: object) -> bool:
        raise RuntimeError("database down")

    monkeypatch.setattr(repo, "has_permission", broken)
    decision = _gate(repo).authorize(7, 7, 12, 3, "point")
    assert decision == access.Denied(access.DenialReason.PERMISSION_DENIED)


@pytest.mark.parametrize(
    ("reason", "label"),
    [
        (access.DenialReason.IDENTITY_MISMATCH, "permission error"),
        (access.DenialReason.PERMISSION_DENIED, "permission error"),
        (access.DenialReason.INVALID_GEOMETRY_TYPE, "invalid geometry type"),
    ],
)
def test_denial_labels(reason: access.DenialReason, label: str) -> None:
    """Test that identity and room refusals share the permission label."""
    assert reason.label == label
