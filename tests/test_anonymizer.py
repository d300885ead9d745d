"""
PHI scrubbing of correction contexts before persistence or embedding.
"""

import pytest
from unittest.mock import patch

from clinfeedback.core.anonymizer import Anonymizer, REDACTED


@pytest.fixture
def anonymizer():
    return Anonymizer()


class TestIdentifiers:
    """Identifiers become stable category tokens."""

    @pytest.mark.parametrize("text,literal", [
        ("MRN: 12345678 on file", "12345678"),
        ("Call back at (555) 123-4567 tomorrow", "123-4567"),
        ("SSN 123-45-6789 recorded", "123-45-6789"),
        ("Contact j.doe@example.org for records", "j.doe@example.org"),
        ("Account No. 99887766 billed", "99887766"),
    ])
    def test_identifier_literal_removed(self, anonymizer, text, literal):
        """The original identifier never survives anonymization."""
        result = anonymizer.anonymize(text)
        assert literal not in result.anonymized
        assert result.metadata.ids_replaced >= 1

    def test_mrn_label_kept(self, anonymizer):
        """Test that the MRN label is kept while the number is replaced."""
        result = anonymizer.anonymize("MRN: 12345678")
        assert result.anonymized == "MRN: [MRN_1]"

    def test_same_value_same_token_across_calls(self, anonymizer):
        """Without clear_caches the same raw value maps to the same token."""
        first = anonymizer.anonymize("MRN 1234567, phone 555-123-4567")
        second = anonymizer.anonymize("Repeat: MRN 1234567, phone 555-123-4567")
        assert "[MRN_1]" in first.anonymized and "[MRN_1]" in second.anonymized
        assert "[PHONE_1]" in first.anonymized and "[PHONE_1]" in second.anonymized

    def test_distinct_values_distinct_tokens(self, anonymizer):
        """Test that different identifiers get different tokens."""
        result = anonymizer.anonymize("MRN 1234567 merged with MRN 7654321")
        assert "[MRN_1]" in result.anonymized
        assert "[MRN_2]" in result.anonymized

    def test_clear_caches_resets_tokens(self, anonymizer):
        """Test that clearing caches restarts token numbering."""
        anonymizer.anonymize("MRN 1234567")
        anonymizer.anonymize("MRN 7654321")
        assert anonymizer.get_stats()["ids_cached"] == 2

        anonymizer.clear_caches()
        assert anonymizer.get_stats() == {"ids_cached": 0, "dates_cached": 0, "names_cached": 0}
        assert anonymizer.anonymize("MRN 7654321").anonymized == "MRN [MRN_1]"


class TestDates:
    """Absolute dates become tokens or admission offsets; relative days stay."""

    def test_dates_without_reference(self, anonymizer):
        """Test date replacement without an admission date."""
        result = anonymizer.anonymize("Seen 2024-03-15 and again March 20, 2024.")
        assert "2024" not in result.anonymized
        assert result.anonymized.count("[DATE]") == 2
        assert result.metadata.dates_replaced == 2

    def test_dates_relative_to_admission(self, anonymizer):
        """Test dates converted to day offsets from admission."""
        result = anonymizer.anonymize(
            "Admitted 03/15/2024, discharged 03/20/2024.", reference_date="2024-03-15"
        )
        assert "[ADMISSION_DATE]" in result.anonymized
        assert "[ADMISSION_DATE+5]" in result.anonymized

    def test_day_first_format(self, anonymizer):
        """Test day-first date formats."""
        result = anonymizer.anonymize("Surgery on 14th February 2024", reference_date="2024-02-10")
        assert result.anonymized == "Surgery on [ADMISSION_DATE+4]"

    @pytest.mark.parametrize("text,expected", [
        ("Extubated on POD 3", "Extubated on POD #3"),
        ("Drain removed post-op day 2", "Drain removed POD #2"),
        ("Transferred on hospital day 6", "Transferred on HD #6"),
    ])
    def test_relative_days_normalized(self, anonymizer, text, expected):
        """Test that POD and hospital day references are normalized."""
        assert anonymizer.anonymize(text).anonymized == expected


class TestNamesAndLocations:
    """Names and places are replaced; clinical vocabulary survives."""

    def test_provider_prefix(self, anonymizer):
        """Test replacement of names after provider titles."""
        result = anonymizer.anonymize("Dr. Smith started aspirin after craniotomy for SAH.")
        assert "Smith" not in result.anonymized
        assert "Dr. [PROVIDER_NAME]" in result.anonymized

    def test_patient_name_reused_later(self, anonymizer):
        """Test that later bare mentions of a name reuse its token."""
        result = anonymizer.anonymize(
            "Patient John Smith presented with a left MCA aneurysm. Smith was taken for clipping."
        )
        assert "John" not in result.anonymized
        assert "Smith" not in result.anonymized
        assert result.anonymized.count("[PATIENT_NAME]") == 2
        assert "left MCA aneurysm" in result.anonymized

    def test_family_member(self, anonymizer):
        """Test replacement of family member names."""
        result = anonymizer.anonymize("Discussed plan with daughter Maria at bedside.")
        assert "Maria" not in result.anonymized
        assert "[FAMILY_MEMBER]" in result.anonymized

    @pytest.mark.parametrize("text,term", [
        ("Dr. Aspirin was not given.", "Aspirin"),
        ("Patient Craniotomy scheduled.", "Craniotomy"),
        ("SAH graded by Hunt Hess scale.", "SAH"),
        ("Neurosurgery Clinic follow-up in two weeks.", "Neurosurgery Clinic"),
        ("Hunt Hess grade 3 on arrival.", "Hunt Hess"),
    ])
    def test_clinical_allow_list_never_redacted(self, anonymizer, text, term):
        """Allow-listed clinical terms survive name-like contexts."""
        assert term in anonymizer.anonymize(text).anonymized

    def test_facility_and_city(self, anonymizer):
        """Test facility and city/state replacement."""
        result = anonymizer.anonymize(
            "Transferred from Springfield General Hospital in Springfield, IL 62704."
        )
        assert "Springfield" not in result.anonymized
        assert "62704" not in result.anonymized
        assert "[HOSPITAL]" in result.anonymized
        assert "[LOCATION] [ZIP]" in result.anonymized

    def test_street_address(self, anonymizer):
        """Test street address replacement."""
        result = anonymizer.anonymize("Lives at 42 Maple Street with family.")
        assert "[ADDRESS]" in result.anonymized
        assert "Maple" not in result.anonymized


class TestDegradedBehaviour:
    """anonymize never raises."""

    @pytest.mark.parametrize("value", [None, "", 12345, ["MRN 123456"]])
    def test_non_text_input_gives_empty_result(self, anonymizer, value):
        """Test that non-text input gives an empty result."""
        result = anonymizer.anonymize(value)
        assert result.anonymized == ""
        assert result.metadata.items_anonymized == 0

    def test_internal_failure_redacts_everything(self, anonymizer):
        """Test that an internal failure redacts the whole text."""
        with patch.object(Anonymizer, "_replace_dates", side_effect=RuntimeError("boom")):
            result = anonymizer.anonymize("Patient John Smith, MRN 1234567")
        assert result.anonymized == REDACTED
        assert result.metadata.degraded is True

    def test_bad_reference_date_degrades(self, anonymizer):
        """Test that an unparseable admission date degrades to full redaction."""
        result = anonymizer.anonymize("Admitted 03/15/2024", reference_date="not-a-date")
        assert result.anonymized == REDACTED
        assert result.metadata.degraded is True


class TestContainsPhi:

    def test_reports_categories(self, anonymizer):
        """Test PHI category detection."""
        report = anonymizer.contains_phi("Dr. Smith called 555-123-4567 on 2024-01-02")
        assert report.has_phi is True
        assert set(report.types) >= {"dates", "phone", "names"}

    def test_clean_clinical_text(self, anonymizer):
        """Test that clinical text without PHI is reported clean."""
        report = anonymizer.contains_phi("left MCA aneurysm treated with clipping")
        assert report.has_phi is False
        assert report.types == []

    def test_anonymized_output_is_clean(self, anonymizer):
        """Test that anonymized output reports no PHI."""
        text = "Patient John Smith, MRN 1234567, seen 2024-01-02 at Springfield General Hospital."
        assert anonymizer.contains_phi(anonymizer.anonymize(text).anonymized).has_phi is False
