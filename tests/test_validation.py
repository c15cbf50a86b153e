"""
Unit tests for the validation pipeline
"""

import pytest

from ipk.engine import SignatureEngine, encode_signature
from ipk.deadline import Deadline
from ipk.errors import OperationTimeout, ValidationFailure
from ipk.models import CheckPoint, ValidationResult
from ipk.signers import LocalSigner
from ipk.validation import ValidationPipeline

from conftest import build_container


@pytest.fixture
def pipeline(codec, quiet_log):
    return ValidationPipeline(codec, SignatureEngine(), log_callback=quiet_log)


@pytest.fixture
def signed_bytes(codec, three_payloads, rsa_material, quiet_log):
    container = codec.decode(build_container(three_payloads))
    signer = LocalSigner(rsa_material, codec=codec, log_callback=quiet_log)
    return codec.encode(container.header, signer.resign_sections(container.sections))


class TestCheckExisting:
    def test_unsigned_container(self, pipeline, codec, three_payloads):
        container = codec.decode(build_container(three_payloads))
        result = pipeline.check_existing(container.sections)
        assert not result.valid
        assert result.reason == "No signature block"
        assert result.checked_at is CheckPoint.EXISTING

    def test_signed_container(self, pipeline, codec, signed_bytes, rsa_material):
        result = pipeline.check_existing(codec.decode(signed_bytes).sections)
        assert result.valid
        assert result.signer_fingerprint == rsa_material.fingerprint_sha256
        assert result.signer_name == "Test RSA Developer"

    def test_multiple_blocks(self, pipeline, codec, signed_bytes):
        container = codec.decode(signed_bytes)
        sections = list(container.sections) + [container.sections[-1]]
        result = pipeline.check_existing(codec.relayout(sections))
        assert not result.valid
        assert "Multiple" in result.reason

    def test_malformed_block(self, pipeline, codec, signed_bytes):
        container = codec.decode(signed_bytes)
        sections = list(container.sections)
        sections[-1] = sections[-1].with_payload(sections[-1].payload[:-5])
        result = pipeline.check_existing(sections)
        assert not result.valid
        assert "Malformed" in result.reason


class TestCheckFinal:
    def test_valid_output(self, pipeline, signed_bytes, rsa_material):
        result = pipeline.check_final(signed_bytes, expected_fingerprint=rsa_material.fingerprint_sha256)
        assert result.valid
        assert result.checked_at is CheckPoint.FINAL
        assert result.warnings == []

    def test_payload_tamper_detected(self, pipeline, codec, signed_bytes):
        container = codec.decode(signed_bytes)
        sections = list(container.sections)
        payload = bytearray(sections[0].payload)
        payload[0] ^= 0x01
        sections[0] = sections[0].with_payload(bytes(payload))

        result = pipeline.check_final(codec.encode(container.header, sections))
        assert not result.valid
        assert "digest mismatch" in result.reason

    def test_every_section_is_covered(self, pipeline, codec, signed_bytes):
        container = codec.decode(signed_bytes)
        for index in range(len(container.sections) - 1):
            sections = list(container.sections)
            sections[index] = sections[index].with_payload(sections[index].payload + b"\x00")
            assert not pipeline.check_final(codec.encode(container.header, sections)).valid

    def test_compressed_byte_flip_detected(self, pipeline, signed_bytes):
        data = bytearray(signed_bytes)
        data[-10] ^= 0xFF
        result = pipeline.check_final(bytes(data))
        assert not result.valid

    def test_trailer_rejected(self, pipeline, signed_bytes):
        result = pipeline.check_final(signed_bytes + b"\x00" * 64)
        assert not result.valid
        assert "trailing" in result.reason

    def test_unexpected_signer_rejected(self, pipeline, signed_bytes, ec_material):
        result = pipeline.check_final(signed_bytes, expected_fingerprint=ec_material.fingerprint_sha256)
        assert not result.valid
        assert "expected" in result.reason

    def test_fingerprint_accepts_colons_and_case(self, pipeline, signed_bytes, rsa_material):
        hex_fp = rsa_material.fingerprint_sha256.lower()
        colon_fp = ":".join(hex_fp[i:i + 2] for i in range(0, len(hex_fp), 2))
        assert pipeline.check_final(signed_bytes, expected_fingerprint=colon_fp).valid

    def test_undecodable_output(self, pipeline):
        result = pipeline.check_final(b"\x00" * 10)
        assert not result.valid
        assert "does not decode" in result.reason

    def test_forged_block_over_other_content(self, pipeline, codec, signed_bytes, rsa_material):
        engine = SignatureEngine()
        container = codec.decode(signed_bytes)
        forged = engine.sign(engine.compute_digest([b"something else"]), rsa_material)
        sections = list(container.sections)
        sections[-1] = sections[-1].with_payload(encode_signature(forged))
        assert not pipeline.check_final(codec.encode(container.header, sections)).valid

    def test_bytes_moved_between_sections_detected(self, pipeline, codec, signed_bytes):
        container = codec.decode(signed_bytes)
        first, second, third, block = container.sections
        resplit = [
            codec.new_section(first.payload + second.payload[:5]),
            codec.new_section(second.payload[5:]),
            third,
            block,
        ]

        result = pipeline.check_final(codec.encode(container.header, codec.relayout(resplit)))

        assert not result.valid
        assert "layout mismatch" in result.reason

    def test_empty_section_inserted_detected(self, pipeline, codec, signed_bytes):
        container = codec.decode(signed_bytes)
        sections = list(container.sections)
        sections.insert(1, codec.new_section(b""))

        result = pipeline.check_final(codec.encode(container.header, codec.relayout(sections)))

        assert not result.valid
        assert "layout mismatch" in result.reason

    def test_timeout_while_redecoding_is_a_validate_failure(self, pipeline, signed_bytes):
        with pytest.raises(OperationTimeout) as exc_info:
            pipeline.check_final(signed_bytes, deadline=Deadline(0))
        assert exc_info.value.stage == "validate"

    def test_delegated_output_structural_only(self, pipeline, three_payloads):
        result = pipeline.check_final(build_container(three_payloads), delegated=True)
        assert result.valid
        assert result.warnings

    def test_expired_signer_warns(self, pipeline, codec, three_payloads, expired_material, quiet_log):
        container = codec.decode(build_container(three_payloads))
        signer = LocalSigner(expired_material, codec=codec, log_callback=quiet_log)
        data = codec.encode(container.header, signer.resign_sections(container.sections))
        result = pipeline.check_final(data)
        assert result.valid
        assert any("expired" in w for w in result.warnings)


class TestValidate:
    def test_validate_reports_existing_checkpoint(self, pipeline, signed_bytes):
        result = pipeline.validate(signed_bytes)
        assert result.valid
        assert result.checked_at is CheckPoint.EXISTING

    def test_validate_rejects_trailer(self, pipeline, signed_bytes):
        assert not pipeline.validate(signed_bytes + b"\x00" * 8).valid

    def test_require_valid(self):
        ok = ValidationResult(True, "fine", CheckPoint.FINAL)
        assert ValidationPipeline.require_valid(ok) is ok
        with pytest.raises(ValidationFailure):
            ValidationPipeline.require_valid(ValidationResult(False, "bad", CheckPoint.FINAL))
