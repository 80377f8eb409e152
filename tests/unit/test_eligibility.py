"""
Unit tests for ReceiverEligibilityChecker — class matching and expiry.
"""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock

import pytest

from afip_invoicer.domain.errors import (
    ErrorCode,
    ExpiredConditionError,
    IneligibleReceiverError,
    NoEligibleConditionError,
    RemoteCallError,
)
from afip_invoicer.eligibility import ReceiverEligibilityChecker, condition_from_entry
from tests.conftest import StaticCredentials

pytestmark = pytest.mark.anyio

TODAY = date(2026, 10, 19)

FINAL_CONSUMER = {"Id": "5", "Desc": "Consumidor Final", "Cmp_Clase": "B/C", "FechaDesde": "20200101"}
REGISTERED = {"Id": "1", "Desc": "IVA Responsable Inscripto", "Cmp_Clase": "A/M/C"}


@pytest.fixture()
def gateway() -> AsyncMock:
    return AsyncMock()


@pytest.fixture()
def checker(gateway: AsyncMock) -> ReceiverEligibilityChecker:
    return ReceiverEligibilityChecker(StaticCredentials(), gateway, today=lambda: TODAY)


class TestConditionFromEntry:
    def test_maps_fields_and_dates(self) -> None:
        condition = condition_from_entry({**FINAL_CONSUMER, "FechaHasta": "NULL"})

        assert condition.id == 5
        assert condition.description == "Consumidor Final"
        assert condition.invoice_class == "B/C"
        assert condition.valid_from == date(2020, 1, 1)
        assert condition.valid_to is None

    def test_entry_without_id_is_malformed(self) -> None:
        with pytest.raises(RemoteCallError):
            condition_from_entry({"Desc": "sin id"})


class TestListConditions:
    async def test_passes_class_filter_to_gateway(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        gateway.receiver_conditions.return_value = [FINAL_CONSUMER, REGISTERED]

        conditions = await checker.list_conditions("B")

        assert [c.id for c in conditions] == [5, 1]
        assert gateway.receiver_conditions.await_args.args[1] == "B"

    async def test_without_filter(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        gateway.receiver_conditions.return_value = []

        assert await checker.list_conditions() == []
        assert gateway.receiver_conditions.await_args.args[1] is None


class TestCheckEligibility:
    """Verify selection of the receiver condition for an invoice class."""

    async def test_selects_first_matching_condition(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        """
        GIVEN conditions for B/C and A/M/C
        WHEN eligibility is checked for class B
        THEN the final consumer condition is selected.
        """
        gateway.receiver_conditions.return_value = [REGISTERED, FINAL_CONSUMER]

        condition = await checker.check_eligibility("B", 99, 0)

        assert condition.id == 5
        assert condition.as_ref().description == "Consumidor Final"

    async def test_only_b_conditions_for_class_a_is_ineligible(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        """
        GIVEN the gateway only lists class B conditions
        WHEN eligibility is checked for class A
        THEN IneligibleReceiverError is raised.
        """
        gateway.receiver_conditions.return_value = [FINAL_CONSUMER]

        with pytest.raises(IneligibleReceiverError) as exc_info:
            await checker.check_eligibility("A", 80, 20123456786)
        assert exc_info.value.code == ErrorCode.BUSINESS_RULE_ERROR

    async def test_condition_expired_yesterday(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        """
        GIVEN the matching condition has FechaHasta = yesterday
        WHEN eligibility is checked
        THEN ExpiredConditionError is raised.
        """
        gateway.receiver_conditions.return_value = [{**FINAL_CONSUMER, "FechaHasta": "20261018"}]

        with pytest.raises(ExpiredConditionError):
            await checker.check_eligibility("B", 99, 0)

    async def test_condition_ending_today_is_still_valid(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        gateway.receiver_conditions.return_value = [{**FINAL_CONSUMER, "FechaHasta": "20261019"}]

        condition = await checker.check_eligibility("B", 99, 0)
        assert condition.valid_to == TODAY

    async def test_empty_list_raises_no_eligible_condition(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        gateway.receiver_conditions.return_value = []

        with pytest.raises(NoEligibleConditionError):
            await checker.check_eligibility("B", 99, 0)

    async def test_every_check_queries_the_gateway(
        self, checker: ReceiverEligibilityChecker, gateway: AsyncMock
    ) -> None:
        gateway.receiver_conditions.return_value = [FINAL_CONSUMER]

        await checker.check_eligibility("B", 99, 0)
        await checker.check_eligibility("B", 99, 0)

        assert gateway.receiver_conditions.await_count == 2
