"""
Tests for ledger document decoding.

The decoder must never raise: bad entries are skipped with a diagnostic,
bad documents yield nothing and a diagnostic.
"""

import pytest

from carbonclaims.core.decoder import (
    AbsentShape,
    ContentsShape,
    DirectSequenceShape,
    MalformedShape,
    classify,
    decode_claims,
    decode_organization,
    decode_organizations,
    unwrap_document,
)
from carbonclaims.schemas import ClaimStatus


def claim_fields(**overrides):
    fields = {
        "organisation_wallet_address": "0xowner",
        "longitude": "13",
        "latitude": "52",
        "requested_carbon_credits": "250",
        "status": "0",
        "ipfs_hash": "QmHash",
        "description": "Solar array phase 2",
        "time_of_issue": "1700000000000",
        "voting_period": "7",
        "yes_votes": "2",
        "no_votes": "1",
        "total_votes": "3",
    }
    fields.update(overrides)
    return fields


def entry(key, fields):
    return {
        "type": "0x2::vec_map::Entry<0x2::object::ID, 0xpkg::carbon_marketplace::Claim>",
        "fields": {
            "key": key,
            "value": {"type": "0xpkg::carbon_marketplace::Claim", "fields": fields},
        },
    }


def handler_document(*entries, container="claims"):
    return {
        "data": {
            "objectId": "0xhandler",
            "version": "12",
            "content": {
                "dataType": "moveObject",
                "type": "0xpkg::carbon_marketplace::ClaimHandler",
                "fields": {
                    "id": {"id": "0xhandler"},
                    container: {
                        "type": "0x2::vec_map::VecMap<...>",
                        "fields": {"contents": list(entries)},
                    },
                },
            },
        }
    }


class TestShapes:
    """Document classification."""

    def test_envelope_is_unwrapped(self):
        bag = unwrap_document(handler_document())
        assert "claims" in bag
        assert "data" not in bag

    def test_field_bag_passes_through(self):
        payload = {"claims": []}
        assert unwrap_document(payload) is payload

    def test_non_mapping_document(self):
        assert unwrap_document(["not", "a", "map"]) is None

    def test_contents_shape(self):
        shape = classify({"fields": {"contents": [1, 2]}})
        assert isinstance(shape, ContentsShape)
        assert shape.entries == (1, 2)

    def test_contents_without_fields_wrapper(self):
        assert isinstance(classify({"contents": []}), ContentsShape)

    def test_direct_sequence_shape(self):
        shape = classify([{"claim_id": "0x1"}])
        assert isinstance(shape, DirectSequenceShape)

    def test_missing_contents_is_absent(self):
        assert isinstance(classify({"fields": {}}), AbsentShape)
        assert isinstance(classify(None), AbsentShape)

    def test_non_sequence_contents_is_malformed(self):
        shape = classify({"fields": {"contents": "oops"}})
        assert isinstance(shape, MalformedShape)
        assert "contents" in shape.reason

    def test_scalar_container_is_malformed(self):
        assert isinstance(classify(42), MalformedShape)


class TestDecodeClaims:
    """Claim decoding from both document shapes."""

    def test_contents_shape_decodes_typed_record(self):
        result = decode_claims(handler_document(entry("0xc1", claim_fields())))

        assert result.shape == "contents"
        assert result.diagnostics == ()
        (record,) = result.records
        assert record.claim_id == "0xc1"
        assert record.owner_address == "0xowner"
        assert record.longitude == 13.0
        assert record.latitude == 52.0
        assert record.requested_credits == 250
        assert record.status is ClaimStatus.PENDING
        assert record.evidence_ref == "QmHash"
        assert record.issued_at == 1_700_000_000_000
        assert record.voting_period == 7
        assert (record.yes_votes, record.no_votes, record.total_votes) == (2, 1, 3)

    def test_direct_sequence_decodes_event_payload(self):
        payload = {"claims": [
            {"claim_id": "0xa", **claim_fields()},
            {"claim_id": "0xb", **claim_fields(status="1")},
        ]}
        result = decode_claims(payload)

        assert result.shape == "direct"
        assert [r.claim_id for r in result.records] == ["0xa", "0xb"]
        assert result.records[1].status is ClaimStatus.APPROVED

    @pytest.mark.parametrize("code,expected", [
        ("0", ClaimStatus.PENDING),
        ("1", ClaimStatus.APPROVED),
        ("2", ClaimStatus.REJECTED),
        ("9", ClaimStatus.REJECTED),
        (0, ClaimStatus.PENDING),
    ])
    def test_status_codes(self, code, expected):
        result = decode_claims(handler_document(entry("0xc1", claim_fields(status=code))))
        assert result.records[0].status is expected

    def test_one_entry_without_field_bag_is_skipped(self):
        broken = {"fields": {"key": "0xc2", "value": {}}}
        result = decode_claims(handler_document(
            entry("0xc1", claim_fields()),
            broken,
            entry("0xc3", claim_fields()),
        ))

        assert [r.claim_id for r in result.records] == ["0xc1", "0xc3"]
        assert len(result.diagnostics) == 1
        assert "entry 1" in result.diagnostics[0]

    def test_defaults_for_missing_fields(self):
        result = decode_claims(handler_document(entry("0xc1", {"status": "0"})))

        record = result.records[0]
        assert record.owner_address == "Unknown"
        assert record.description == ""
        assert record.evidence_ref == ""
        assert record.requested_credits == 0
        assert record.total_votes == 0

    def test_total_votes_derived_when_absent(self):
        fields = claim_fields(yes_votes="4", no_votes="5")
        del fields["total_votes"]
        record = decode_claims(handler_document(entry("0xc1", fields))).records[0]
        assert record.total_votes == 9

    def test_inconsistent_tally_is_skipped(self):
        result = decode_claims(handler_document(
            entry("0xc1", claim_fields(total_votes="10")),
            entry("0xc2", claim_fields()),
        ))

        assert [r.claim_id for r in result.records] == ["0xc2"]
        assert "0xc1" in result.diagnostics[0]

    def test_unparseable_number_is_skipped(self):
        result = decode_claims(handler_document(entry("0xc1", claim_fields(yes_votes="many"))))
        assert result.records == ()
        assert "yes_votes" in result.diagnostics[0]

    def test_coordinate_beyond_float_range_is_skipped(self):
        result = decode_claims(handler_document(
            entry("0xc1", claim_fields(longitude="1" + "0" * 400)),
            entry("0xc2", claim_fields()),
        ))

        assert [r.claim_id for r in result.records] == ["0xc2"]
        assert "longitude" in result.diagnostics[0]

    def test_oversized_issue_time_is_kept_raw(self):
        result = decode_claims(handler_document(entry("0xc1", claim_fields(time_of_issue="1" + "0" * 400))))
        assert result.records[0].issued_at == 10**400

    def test_duplicate_ids_keep_first(self):
        result = decode_claims(handler_document(
            entry("0xc1", claim_fields(description="first")),
            entry("0xc1", claim_fields(description="second")),
        ))

        assert len(result.records) == 1
        assert result.records[0].description == "first"
        assert "duplicate" in result.diagnostics[0]

    def test_every_decoded_record_keeps_tally_invariant(self):
        result = decode_claims(handler_document(
            entry("0xc1", claim_fields()),
            entry("0xc2", claim_fields(yes_votes="0", no_votes="0", total_votes="0")),
            entry("0xc3", claim_fields(total_votes="99")),
        ))
        assert result.records
        for record in result.records:
            assert record.yes_votes + record.no_votes == record.total_votes

    def test_decoding_is_idempotent(self):
        document = handler_document(entry("0xc1", claim_fields()), entry("0xc2", claim_fields()))
        assert decode_claims(document) == decode_claims(document)

    def test_absent_container_is_well_formed_empty(self):
        result = decode_claims({"data": {"content": {"fields": {"id": {"id": "0xh"}}}}})
        assert result.records == ()
        assert result.diagnostics == ()
        assert result.well_formed_empty

    def test_empty_contents_is_well_formed_empty(self):
        result = decode_claims(handler_document())
        assert result.well_formed_empty
        assert not result.malformed

    @pytest.mark.parametrize("document", [None, "claims", 7, ["a"]])
    def test_malformed_document_never_raises(self, document):
        result = decode_claims(document)
        assert result.malformed
        assert result.records == ()
        assert result.diagnostics

    def test_malformed_contents(self):
        result = decode_claims({"claims": {"fields": {"contents": {"not": "a list"}}}})
        assert result.malformed


class TestDecodeOrganizations:
    """Organisation handler and details-event decoding."""

    def test_defaults(self):
        document = handler_document(
            {"fields": {"key": "0xorg1", "value": {"fields": {"owner": "0xowner"}}}},
            container="organisations",
        )
        (org,) = decode_organizations(document).records

        assert org.org_id == "0xorg1"
        assert org.name == "Unknown"
        assert org.description == "No description"
        assert org.wallet_address == "0xowner"
        assert org.reputation_score == 0

    def test_own_id_wins_over_key(self):
        document = handler_document(
            {"fields": {"key": "0xkey", "value": {"fields": {
                "id": {"id": "0xreal"}, "name": "Green Horizons", "reputation_score": "85",
            }}}},
            container="organisations",
        )
        (org,) = decode_organizations(document).records
        assert org.org_id == "0xreal"
        assert org.reputation_tier == "excellent"

    def test_out_of_range_reputation_is_skipped(self):
        document = handler_document(
            {"fields": {"key": "0xa", "value": {"fields": {"name": "A", "reputation_score": "150"}}}},
            {"fields": {"key": "0xb", "value": {"fields": {"name": "B", "reputation_score": "60"}}}},
            container="organisations",
        )
        result = decode_organizations(document)
        assert [o.org_id for o in result.records] == ["0xb"]
        assert result.records[0].reputation_tier == "good"
        assert len(result.diagnostics) == 1

    def test_details_event_payload(self):
        org = decode_organization({
            "organisation_id": "0xorg",
            "name": "Forest Keepers",
            "carbon_credits": "300",
            "reputation_score": "40",
            "owner": "0xowner",
        })
        assert org.org_id == "0xorg"
        assert org.carbon_credits == 300
        assert org.reputation_tier == "needs_improvement"

    def test_details_payload_without_id(self):
        assert decode_organization({"name": "Nameless"}) is None
        assert decode_organization("garbage") is None
