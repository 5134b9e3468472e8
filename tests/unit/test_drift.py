"""Tests for provisioner key drift detection."""

from __future__ import annotations

from coder_k8s_operator.utils.drift import detect_drift, hash_secret, hash_tags


class TestHashTags:
    """Test cases for hash_tags."""

    def test_order_independent(self):
        """Test that insertion order does not change the digest."""
        assert hash_tags({"a": "1", "b": "2"}) == hash_tags({"b": "2", "a": "1"})

    def test_empty_and_none(self):
        """Test that no tags hash like an empty map."""
        assert hash_tags(None) == hash_tags({})
        assert len(hash_tags({})) == 8

    def test_boundaries_matter(self):
        """Test that key/value boundaries are part of the digest."""
        assert hash_tags({"ab": "c"}) != hash_tags({"a": "bc"})

    def test_values_matter(self):
        """Test that changing a value changes the digest."""
        assert hash_tags({"scope": "org"}) != hash_tags({"scope": "user"})


class TestHashSecret:
    """Test cases for hash_secret."""

    def test_str_and_bytes_agree(self):
        """Test that text and bytes inputs hash identically."""
        assert hash_secret("abc") == hash_secret(b"abc")
        assert hash_secret("abc") != hash_secret("abd")


class TestDetectDrift:
    """Test cases for detect_drift."""

    def baseline(self, **overrides):
        status = {"organizationName": "default", "provisionerKeyName": "ci", "tagsHash": hash_tags({})}
        status.update(overrides)
        return status

    def test_no_drift(self):
        """Test that a matching baseline reports nothing."""
        report = detect_drift(self.baseline(), "default", "ci", hash_tags({}))

        assert not report.detected
        assert report.fields() == []
        assert report.baseline_incomplete is False

    def test_each_field(self):
        """Test that each identity field is reported separately."""
        report = detect_drift(self.baseline(), "other", "ci2", hash_tags({"a": "b"}))

        assert report.detected
        assert report.fields() == ["organization", "keyName", "tags"]

    def test_tags_only(self):
        """Test tag drift alone."""
        report = detect_drift(self.baseline(), "default", "ci", hash_tags({"a": "b"}))

        assert report.fields() == ["tags"]

    def test_empty_status_is_not_drift(self):
        """Test that a first pass never counts as drift."""
        report = detect_drift({}, "default", "ci", hash_tags({}))

        assert not report.detected
        assert report.baseline_incomplete is True

    def test_partial_baseline(self):
        """Test that a missing tags hash marks the baseline incomplete."""
        report = detect_drift(self.baseline(tagsHash=""), "default", "ci", hash_tags({"a": "b"}))

        assert not report.detected
        assert report.baseline_incomplete is True
