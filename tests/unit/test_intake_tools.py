"""Tests for the intake tool registry."""
import pytest

from intake_dialer.services.intake.tools import IntakeToolRegistry, ToolNotFoundError

COMPLETE_PATIENT = {
    "patientName": "Asha",
    "age": 34,
    "gender": "महिला",
    "healthIssue": "knee pain",
    "duration": "2 weeks",
    "severity": 6,
    "city": "Pune",
}


@pytest.fixture
def tools():
    return IntakeToolRegistry()


async def save(tools, session_id, patient_data, status="completed"):
    await tools.execute_tool(
        "save_patient_data",
        {"sessionId": session_id, "patientData": patient_data, "completedAt": None, "status": status},
    )


class TestValidatePatientData:
    """Test validate_patient_data."""

    @pytest.mark.asyncio
    async def test_complete_record_is_valid(self, tools):
        """Test a complete patient record validates."""
        result = await tools.execute_tool("validate_patient_data", {"patientData": COMPLETE_PATIENT})

        assert result == {"isValid": True, "missingFields": [], "invalidFields": [], "warnings": []}

    @pytest.mark.asyncio
    async def test_missing_and_out_of_range_fields(self, tools):
        """Test missing and out of range fields are errors."""
        patient = dict(COMPLETE_PATIENT, age=130, severity=0, city="")

        result = await tools.execute_tool("validate_patient_data", {"patientData": patient})

        assert result["isValid"] is False
        assert result["missingFields"] == ["city"]
        assert result["invalidFields"] == ["age", "severity"]

    @pytest.mark.asyncio
    async def test_unknown_gender_is_only_a_warning(self, tools):
        """Test an unknown gender is reported as a warning."""
        patient = dict(COMPLETE_PATIENT, gender="unspecified")

        result = await tools.execute_tool("validate_patient_data", {"patientData": patient})

        assert result["isValid"] is True
        assert result["warnings"] == ["gender_format"]


class TestIntakeToolRegistry:
    """Test tool execution, analytics and export."""

    @pytest.mark.asyncio
    async def test_unknown_tool(self, tools):
        """Test calling an unknown tool fails."""
        with pytest.raises(ToolNotFoundError):
            await tools.execute_tool("delete_everything", {})

    @pytest.mark.asyncio
    async def test_save_patient_response(self, tools):
        """Test patient responses are stored per session."""
        result = await tools.execute_tool(
            "save_patient_response",
            {"sessionId": "s-1", "field": "city", "value": "Pune", "timestamp": "t0"},
        )

        assert result["success"] is True
        assert tools.responses["s-1"]["city"] == {"value": "Pune", "timestamp": "t0"}

    @pytest.mark.asyncio
    async def test_analytics_counts_completed_only(self, tools):
        """Test analytics only count completed records."""
        await save(tools, "s-1", COMPLETE_PATIENT)
        await save(tools, "s-2", dict(COMPLETE_PATIENT, age=70, city="Delhi"))
        await save(tools, "s-3", dict(COMPLETE_PATIENT, age=10), status="partial")

        result = await tools.execute_tool("get_conversation_analytics", {})

        assert result["timeRange"] == "all"
        assert result["totalConversations"] == 3
        assert result["completedConversations"] == 2
        assert result["commonHealthIssues"] == {"knee pain": 2}
        assert result["citiesDistribution"] == {"Pune": 1, "Delhi": 1}
        assert result["ageGroups"] == {"0-18": 0, "19-35": 1, "36-50": 0, "51-65": 0, "65+": 1}

    @pytest.mark.asyncio
    async def test_export_filters_by_session(self, tools):
        """Test the export can be filtered by session."""
        await save(tools, "s-1", COMPLETE_PATIENT)
        await save(tools, "s-2", COMPLETE_PATIENT)

        result = await tools.execute_tool("export_patient_data", {"format": "json", "sessionIds": ["s-2", "s-9"]})

        assert result["count"] == 1
        assert result["data"][0]["sessionId"] == "s-2"

    @pytest.mark.asyncio
    async def test_export_csv(self, tools):
        """Test the CSV export returns saved records."""
        await save(tools, "s-1", COMPLETE_PATIENT)

        result = await tools.execute_tool("export_patient_data", {"format": "csv"})

        header, row = result["data"].strip().split("\n")
        assert header == "SessionId,PatientName,Age,Gender,HealthIssue,Duration,Severity,City,CompletedAt,Status"
        assert row == "s-1,Asha,34,महिला,knee pain,2 weeks,6,Pune,,completed"

    def test_generate_summary(self, tools):
        """Test the summary covers the collected fields."""
        summary = tools.generate_summary({"patientName": "Asha", "severity": 6})

        assert "Asha" in summary
        assert "6/10" in summary
        assert "N/A" in summary
