"""Tests for utility functions."""

from ssh_tunnels.utils import mask_sensitive_data, sanitize_log_data


class TestMaskSensitiveData:
    """Test sensitive data masking function."""

    def test_fully_masked_by_default(self):
        assert mask_sensitive_data("hunter2") == "*******"

    def test_show_trailing_chars(self):
        assert mask_sensitive_data("secret123456", show_chars=4) == "********3456"

    def test_custom_mask_char(self):
        assert mask_sensitive_data("secret", mask_char="#") == "######"

    def test_short_value(self):
        assert mask_sensitive_data("abc", show_chars=4) == "***"

    def test_empty_values(self):
        assert mask_sensitive_data("") == "<None>"
        assert mask_sensitive_data(None) == "<None>"


class TestSanitizeLogData:
    """Test log data sanitization."""

    def test_password_masked(self):
        entry = {"name": "web", "ssh_password": "hunter2", "local_port": 8080}

        sanitized = sanitize_log_data(entry)

        assert sanitized == {"name": "web", "ssh_password": "*******", "local_port": 8080}
        assert entry["ssh_password"] == "hunter2"

    def test_key_path_untouched(self):
        assert sanitize_log_data({"ssh_key_path": "~/.ssh/id_ed25519"}) == {
            "ssh_key_path": "~/.ssh/id_ed25519"
        }

    def test_case_insensitive_match(self):
        assert sanitize_log_data({"Key_Passphrase": "x"}) == {"Key_Passphrase": "*"}

    def test_empty_sensitive_value(self):
        assert sanitize_log_data({"ssh_password": None}) == {"ssh_password": "<None>"}
