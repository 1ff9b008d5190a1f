"""
Unit tests for the regulator adapter contract and error classification.
"""

import pytest

from compliance_sync.sync.adapters.base import AdapterRegistry, ApiResponse, classify_api_response
from compliance_sync.sync.exceptions import (
    PermanentApiError,
    RateLimitedError,
    TransientApiError,
)
from compliance_sync.sync.models import EntityType, OperationType

from fakes import FakeAdapter


class TestApiResponse:

    def test_records(self):
        assert ApiResponse.ok().records == []
        assert ApiResponse.ok({"Id": 1}).records == [{"Id": 1}]
        assert ApiResponse.ok([{"Id": 1}, {"Id": 2}]).records == [{"Id": 1}, {"Id": 2}]

    def test_success_does_not_raise(self):
        ApiResponse.ok({"Id": 1}).raise_for_error()

    def test_failure_raises_classified_error(self):
        with pytest.raises(PermanentApiError) as exc_info:
            ApiResponse.failure("Invalid Tag", status_code=400, raw='{"Message": "Invalid Tag"}').raise_for_error()

        assert exc_info.value.status_code == 400
        assert exc_info.value.response == '{"Message": "Invalid Tag"}'
        assert str(exc_info.value) == "REJECTED: Invalid Tag (HTTP 400)"


class TestClassifyApiResponse:

    @pytest.mark.parametrize("status_code,error_type,code", [
        (429, RateLimitedError, "RATE_LIMITED"),
        (400, PermanentApiError, "REJECTED"),
        (404, PermanentApiError, "REJECTED"),
        (500, TransientApiError, "TRANSIENT"),
        (503, TransientApiError, "TRANSIENT"),
        (0, TransientApiError, "TRANSIENT"),
    ])
    def test_status_codes(self, status_code, error_type, code):
        error = classify_api_response(ApiResponse.failure("boom", status_code=status_code))

        assert type(error) is error_type
        assert error.code == code

    def test_rate_limit_carries_retry_after(self):
        error = classify_api_response(ApiResponse.failure("slow down", status_code=429, retry_after=30))
        assert error.retry_after == 30

    def test_rate_limit_flag_without_status(self):
        response = ApiResponse(success=False, error_message="throttled", rate_limited=True)
        assert isinstance(classify_api_response(response), RateLimitedError)

    def test_default_message(self):
        error = classify_api_response(ApiResponse(success=False, status_code=502))
        assert error.message == "Regulator API call failed with HTTP 502"

    def test_network_error_has_no_status(self):
        error = classify_api_response(ApiResponse.failure("Connection refused"))
        assert error.status_code is None


class TestAdapterRegistry:

    def test_register_and_resolve(self):
        plants = FakeAdapter(EntityType.PLANT)
        packages = FakeAdapter(EntityType.PACKAGE)
        registry = AdapterRegistry([packages, plants])

        assert registry.get(EntityType.PLANT) is plants
        assert registry.get(EntityType.HARVEST) is None
        assert EntityType.PACKAGE in registry
        assert len(registry) == 2
        assert registry.entity_types() == [EntityType.PLANT, EntityType.PACKAGE]

    def test_register_replaces(self):
        registry = AdapterRegistry([FakeAdapter(EntityType.PLANT)])
        replacement = FakeAdapter(EntityType.PLANT)
        registry.register(replacement)

        assert registry.get(EntityType.PLANT) is replacement
        assert len(registry) == 1


class TestRegulatorModuleAdapter:

    def test_supported_operations(self):
        plants = FakeAdapter(EntityType.PLANT)

        assert plants.supports(OperationType.CHANGE_PHASE)
        assert not plants.supports(OperationType.CREATE)
        assert FakeAdapter(EntityType.TRANSFER).supported_operations == frozenset()

    @pytest.mark.asyncio
    async def test_stats(self):
        adapter = FakeAdapter(EntityType.PACKAGE)

        await adapter.get_active("CA-0001")
        await adapter.execute("CA-0001", OperationType.CREATE, {"Item": "Flower"})

        assert adapter.stats == {"total_reads": 1, "total_writes": 1, "total_errors": 0}
