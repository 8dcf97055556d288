"""Tests for keystack.cli flag mapping."""

from __future__ import annotations

from keystack.cli import _overrides


class TestOverrides:
    def test_maps_flag_names(self):
        out = _overrides("k", "us-west-2a", None, None, None, "203.0.113.7/32", None)
        assert out == {
            "key_name": "k",
            "availability_zone": "us-west-2a",
            "ssh_ingress_cidr": "203.0.113.7/32",
        }

    def test_unset_flags_dropped(self):
        assert _overrides(None, None, None, None, None, None, None) == {}
