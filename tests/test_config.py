"""Tests for fraud policy settings."""

import pytest

from fraud.config import FraudSettings, load_policy_file


@pytest.fixture
def policy_file(tmp_path, monkeypatch):
    path = tmp_path / "policy.yaml"
    path.write_text(
        "burst_min_accounts: 5\n"
        "batch_workers: 2\n"
        "signal_weights:\n"
        "  ip_cluster: 0.4\n"
        "not_a_setting: 1\n"
    )
    monkeypatch.setenv("FRAUD_POLICY_FILE", str(path))
    return path


class TestPolicyFile:
    """YAML policy values and their precedence."""

    def test_values_are_loaded(self, policy_file):
        s = FraudSettings()

        assert s.burst_min_accounts == 5
        assert s.batch_workers == 2
        assert s.signal_weight("ip_cluster") == 0.4

    def test_unknown_keys_are_ignored(self, policy_file):
        assert not hasattr(FraudSettings(), "not_a_setting")

    def test_env_beats_file(self, policy_file, monkeypatch):
        monkeypatch.setenv("FRAUD_BATCH_WORKERS", "7")

        assert FraudSettings().batch_workers == 7

    def test_kwargs_beat_env(self, policy_file, monkeypatch):
        monkeypatch.setenv("FRAUD_BATCH_WORKERS", "7")

        assert FraudSettings(batch_workers=3).batch_workers == 3

    def test_missing_file_means_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FRAUD_POLICY_FILE", str(tmp_path / "absent.yaml"))

        assert FraudSettings().burst_min_accounts == 10

    def test_non_mapping_is_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError):
            load_policy_file(str(path))


class TestPolicyValidation:
    def test_revoke_above_eligible(self):
        with pytest.raises(ValueError):
            FraudSettings(revoke_threshold=80, eligible_threshold=70)

    def test_signal_weight_out_of_range(self):
        with pytest.raises(ValueError):
            FraudSettings(signal_weights={"ip_cluster": 1.5})

    def test_unknown_signal_uses_default_weight(self):
        s = FraudSettings()

        assert s.signal_weight("never_heard_of_it") == s.default_signal_weight
