"""Tests for open-data registry cross-referencing."""

from typing import List

import httpx
import pytest

from cpf_scraper.models import TrainingCenter
from cpf_scraper.services.opendata_service import (
    DECLARATION_DATE_FIELD,
    OpenDataCrossReferencer,
    is_exact_match,
    is_person_match,
    pick_best_record,
)


def registry_record(denomination: str, siren: str = "123456789", declared: str = "2024-03-01", **extra) -> dict:
    fields = {
        "denomination": denomination,
        "siren": siren,
        "siretetablissementdeclarant": f"{siren}00012",
        "informationsdeclarees_nbstagiaires": 120,
        "informationsdeclarees_nbstagiairesconfiesparunautreof": "15",
        "informationsdeclarees_effectifformateurs": 4,
        "informationsdeclarees_debutexercice": "2023-01-01",
        DECLARATION_DATE_FIELD: declared,
    }
    fields.update(extra)
    return {"recordid": siren, "fields": fields}


async def add_center(session_factory, name: str, **fields) -> TrainingCenter:
    async with session_factory() as session:
        center = TrainingCenter(name=name, normalized_name=name.lower(), **fields)
        session.add(center)
        await session.commit()
        return center


async def reload_center(session_factory, center_id: int) -> TrainingCenter:
    async with session_factory() as session:
        return await session.get(TrainingCenter, center_id)


class RegistryStub:
    """httpx handler answering from a list of canned responses."""

    def __init__(self, responses: List[httpx.Response]):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


# ============================================================================
# Acceptance rules
# ============================================================================


class TestMatching:
    """Test which registry records may be used for a center."""

    def test_exact_match_ignores_legal_form(self):
        """Test normalized-name equality."""
        assert is_exact_match("ACME Formation SARL", "ACME") is True
        assert is_exact_match("ACME Langues", "ACME") is False

    def test_person_registration(self):
        """Test an individual registered with a civility prefix."""
        assert is_person_match("Jean Dupont", "M. DUPONT Jean") is True
        assert is_person_match("Jean Dupont", "DUPONT Jean") is False
        assert is_person_match("Jean Dupont", "Mme Dupont Marie") is False

    def test_best_record_is_latest_declaration(self):
        """Test that the most recent declaration wins among accepted records."""
        records = [
            registry_record("ACME", siren="111111111", declared="2023-05-01"),
            registry_record("ACME", siren="222222222", declared="2024-02-01"),
            registry_record("ACME Consulting", siren="333333333", declared="2025-01-01"),
        ]

        best = pick_best_record("Acme", records)

        assert best["fields"]["siren"] == "222222222"

    def test_person_match_can_be_disabled(self):
        """Test the person-match switch."""
        records = [registry_record("Madame Claire Martin")]

        assert pick_best_record("Claire Martin", records) is not None
        assert pick_best_record("Claire Martin", records, allow_person_match=False) is None

    def test_no_fuzzy_match(self):
        """Test that a similar name is never accepted."""
        assert pick_best_record("Acme Formations", [registry_record("ACME FORMATION CONSEIL")]) is None


# ============================================================================
# Sync
# ============================================================================


class TestOpenDataSync:
    """Test the registry sync against a stubbed API."""

    async def test_matched_center_is_filled(self, session_factory, test_settings):
        """Test that an accepted record fills registry columns."""
        center = await add_center(session_factory, "ACME Langues")
        stub = RegistryStub([httpx.Response(200, json={"records": [registry_record("ACME LANGUES")]})])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.as_dict() == {"candidates": 1, "matched": 1, "unmatched": 0, "failed": 0}
        stored = await reload_center(session_factory, center.id)
        assert stored.siren == "123456789"
        assert stored.siret == "12345678900012"
        assert stored.declared_trainees == 120
        assert stored.delegated_trainees == 15
        assert stored.declared_trainers == 4
        assert stored.fiscal_year_start.year == 2023
        assert stored.open_data_payload["denomination"] == "ACME LANGUES"
        assert stored.open_data_updated_at is not None

        first_request = stub.requests[0]
        assert first_request.url.params["refine.denomination"] == "ACME Langues"
        assert first_request.url.params["dataset"] == test_settings.OPENDATA_DATASET

    async def test_falls_back_to_text_query(self, session_factory, test_settings):
        """Test the broad query when the exact denomination returns nothing usable."""
        center = await add_center(session_factory, "Jean Dupont")
        stub = RegistryStub([
            httpx.Response(200, json={"records": []}),
            httpx.Response(200, json={"records": [registry_record("M. DUPONT Jean", siren="987654321")]}),
        ])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.matched == 1
        assert stub.requests[1].url.params["q"] == "Jean Dupont"
        assert (await reload_center(session_factory, center.id)).siren == "987654321"

    async def test_unmatched_center_untouched(self, session_factory, test_settings):
        """Test that no accepted record leaves the center as it was."""
        center = await add_center(session_factory, "ACME Langues")
        stub = RegistryStub([httpx.Response(200, json={"records": [registry_record("Autre Organisme")]})])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.unmatched == 1
        assert len(stub.requests) == 2
        stored = await reload_center(session_factory, center.id)
        assert stored.siren is None
        assert stored.open_data_payload is None

    async def test_existing_values_not_blanked(self, session_factory, test_settings):
        """Test that fields missing from the record keep stored values."""
        center = await add_center(session_factory, "ACME", declared_trainers=9)
        record = registry_record("ACME", informationsdeclarees_effectifformateurs=None)
        stub = RegistryStub([httpx.Response(200, json={"records": [record]})])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        await syncer.sync()

        stored = await reload_center(session_factory, center.id)
        assert stored.declared_trainers == 9
        assert stored.siren == "123456789"

    async def test_complete_centers_are_not_queried(self, session_factory, test_settings):
        """Test that only centers with registry gaps are candidates."""
        await add_center(
            session_factory,
            "Complet",
            siren="1",
            siret="2",
            declared_trainees=1,
            declared_trainers=1,
        )
        stub = RegistryStub([httpx.Response(200, json={"records": []})])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.candidates == 0
        assert stub.requests == []

    async def test_transient_errors_are_retried(self, session_factory, test_settings):
        """Test that server errors are retried before giving up."""
        center = await add_center(session_factory, "ACME")
        stub = RegistryStub([
            httpx.Response(503),
            httpx.Response(503),
            httpx.Response(200, json={"records": [registry_record("ACME")]}),
        ])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.matched == 1
        assert len(stub.requests) == 3
        assert (await reload_center(session_factory, center.id)).siren == "123456789"

    async def test_exhausted_retries_count_as_failure(self, session_factory, test_settings):
        """Test that a registry outage fails the center and the run goes on."""
        await add_center(session_factory, "ACME")
        await add_center(session_factory, "Beta Formation")
        stub = RegistryStub([httpx.Response(500)])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.failed == 2
        assert len(stub.requests) == 2 * (test_settings.OPENDATA_RETRIES + 1)

    async def test_client_errors_are_not_retried(self, session_factory, test_settings):
        """Test that a 4xx answer fails the center after a single request."""
        await add_center(session_factory, "ACME")
        stub = RegistryStub([httpx.Response(404)])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.failed == 1
        assert len(stub.requests) == 1


    async def test_invalid_json_is_a_failure(self, session_factory, test_settings):
        """Test that a non-JSON body is reported, not raised."""
        await add_center(session_factory, "ACME")
        stub = RegistryStub([httpx.Response(200, text="<html>maintenance</html>")])
        syncer = OpenDataCrossReferencer(session_factory, test_settings, transport=httpx.MockTransport(stub))

        stats = await syncer.sync()

        assert stats.failed == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v", "-s"])
