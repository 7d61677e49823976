"""Tests for value parsing, transfer configuration and failure messages."""

import json

import pytest

from gdb_flash_loader.config import TargetParameters, TransferConfig
from gdb_flash_loader.core.messages import (
    FailureCode,
    MessageLevel,
    failure_code_for,
    failure_from_exception,
    result_to_messages,
)
from gdb_flash_loader.core.parsing import parse_endpoint, parse_int, parse_size
from gdb_flash_loader.core.results import OperationResult
from gdb_flash_loader.errors import (
    ChecksumMismatchError,
    ConfigurationError,
    DebuggerTimeoutError,
    StagingError,
    TransferCancelled,
)


class TestParseInt:
    """Address and offset parsing."""

    def test_formats(self):
        assert parse_int("4096") == 4096
        assert parse_int("0x20010000") == 0x20010000
        assert parse_int("0X1000") == 0x1000
        assert parse_int("1000h") == 0x1000
        assert parse_int("0x2001_0000") == 0x20010000
        assert parse_int(12) == 12

    def test_empty_is_none(self):
        assert parse_int(None) is None
        assert parse_int("  ") is None

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_int("0xZZ")
        with pytest.raises(ValueError):
            parse_int(True)


class TestParseSize:
    def test_suffixes(self):
        assert parse_size("64K") == 65536
        assert parse_size("64KiB") == 65536
        assert parse_size("1M") == 1024 * 1024
        assert parse_size("4 MB") == 4 * 1024 * 1024
        assert parse_size("0x10000") == 65536

    def test_invalid(self):
        with pytest.raises(ValueError):
            parse_size("64Q")


class TestParseEndpoint:
    def test_host_port(self):
        assert parse_endpoint("localhost:61234") == ("localhost", 61234)

    @pytest.mark.parametrize("value", ["localhost", ":3333", "host:", "host:99999", "host:abc"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_endpoint(value)


class TestTargetParameters:
    """Validation of target constants."""

    def make(self, **overrides):
        values = dict(
            ram_buffer_address=0x200B76A8,
            ram_buffer_size=0x10000,
            flash_base=0,
            copy_function="copy_to_flash",
            chunk_size=0x10000,
        )
        values.update(overrides)
        return TargetParameters(**values)

    def test_valid(self):
        self.make().validate()

    @pytest.mark.parametrize("overrides", [
        {"chunk_size": 0},
        {"chunk_size": 0x10001},
        {"ram_buffer_size": 0},
        {"ram_buffer_address": -1},
        {"copy_function": ""},
        {"copy_function": "copy; quit"},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ConfigurationError):
            self.make(**overrides).validate()

    def test_flash_address(self):
        assert self.make(flash_base=0x1000).flash_address(0x20) == 0x1020


class TestTransferConfig:
    """Loading and overriding transfer configs."""

    def sample(self):
        return {
            "binary_path": "fw.bin",
            "executable_path": "fw.elf",
            "endpoint": "127.0.0.1:3333",
            "target": {
                "ram_buffer_address": "0x200b76a8",
                "ram_buffer_size": "64K",
                "copy_function": "copy_to_flash",
            },
            "max_attempts": 5,
        }

    def test_from_dict_nested(self, tmp_path):
        """Nested target, size suffixes, chunk size defaults to buffer size."""
        config = TransferConfig.from_dict(self.sample(), base_dir=tmp_path)

        assert config.target.ram_buffer_address == 0x200B76A8
        assert config.target.chunk_size == 65536
        assert config.target.flash_base == 0
        assert config.max_attempts == 5
        assert config.binary_path == tmp_path / "fw.bin"
        config.validate()

    def test_from_dict_flat(self):
        data = self.sample()
        data.update(data.pop("target"))
        data["chunk_size"] = "4K"
        config = TransferConfig.from_dict(data)
        assert config.target.chunk_size == 4096

    def test_missing_key(self):
        data = self.sample()
        del data["target"]["copy_function"]
        with pytest.raises(ConfigurationError, match="copy_function"):
            TransferConfig.from_dict(data)

    def test_unknown_key(self):
        data = self.sample()
        data["baud"] = 9600
        with pytest.raises(ConfigurationError, match="baud"):
            TransferConfig.from_dict(data)

    def test_bad_value(self):
        data = self.sample()
        data["response_timeout"] = "soon"
        with pytest.raises(ConfigurationError):
            TransferConfig.from_dict(data)

    def test_from_json_file(self, tmp_path):
        path = tmp_path / "target.json"
        path.write_text(json.dumps(self.sample()))
        config = TransferConfig.from_json_file(path)
        assert config.executable_path == tmp_path / "fw.elf"

    def test_missing_json_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            TransferConfig.from_json_file(tmp_path / "none.json")

    def test_overrides_route_target_fields(self):
        config = TransferConfig.from_dict(self.sample())
        updated = config.with_overrides(chunk_size=1024, max_attempts=None, call_timeout=60.0)

        assert updated.target.chunk_size == 1024
        assert updated.max_attempts == 5
        assert updated.call_timeout == 60.0
        assert config.target.chunk_size == 65536

    def test_to_dict_round_trips(self):
        config = TransferConfig.from_dict(self.sample())
        assert TransferConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("overrides", [
        {"max_attempts": 0},
        {"endpoint": "nowhere"},
        {"checksum_algorithm": "md5"},
        {"response_timeout": -1.0},
        {"grammar": "lldb"},
    ])
    def test_validate_rejects(self, overrides):
        config = TransferConfig.from_dict(self.sample()).with_overrides(**overrides)
        with pytest.raises(ConfigurationError):
            config.validate()


class TestMessages:
    """Failure codes and remediation hints."""

    def test_codes_for_exceptions(self):
        assert failure_code_for(ConfigurationError("x")) == FailureCode.E_CONFIG
        assert failure_code_for(ChecksumMismatchError(1, 2, 3)) == FailureCode.E_CHECKSUM
        assert failure_code_for(StagingError("disk full")) == FailureCode.E_IO
        assert failure_code_for(TransferCancelled("stop")) == FailureCode.E_CANCELLED
        assert failure_code_for(RuntimeError("?")) == FailureCode.E_UNKNOWN

    def test_timeout_detail_includes_partial_output(self):
        error = DebuggerTimeoutError("slow", command="call f()", partial_output=["Run till exit"])
        item = failure_from_exception(error)

        assert item.level == MessageLevel.ERROR
        assert item.code == FailureCode.E_TIMEOUT
        assert "Run till exit" in item.detail
        assert item.remediation

    def test_result_to_messages(self):
        result = OperationResult.failure("upload", "Chunk 3: mismatch")
        result.add_warning("Chunk 1 needed 1 retry")
        result.metadata["failure_code"] = "E_CHECKSUM"

        items = result_to_messages(result)
        assert [i.code for i in items] == [FailureCode.W_RETRY, FailureCode.E_CHECKSUM]

    def test_checksum_mismatch_message(self):
        error = ChecksumMismatchError(5, 0x10, 0x11)
        assert str(error) == "Checksum mismatch on chunk 5: host=0x00000010 target=0x00000011"
        assert error.retryable


class TestOperationResult:
    def test_summary_and_dict(self):
        result = OperationResult.success("upload", region="0x00000000-0x00000100", bytes_len=256)
        result.checksums["image"] = 0xABCD

        assert "[SUCCESS] upload" in result.to_summary()
        assert "image: 0x0000ABCD" in result.to_summary()
        assert result.to_dict()["checksums"] == {"image": "0x0000ABCD"}
        assert "logs" not in result.to_dict()
