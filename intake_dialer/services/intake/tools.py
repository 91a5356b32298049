"""In-memory tool registry for patient data extracted during intake calls."""
import csv
import io
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from intake_dialer.services.call_session.models import utcnow

logger = logging.getLogger(__name__)

REQUIRED_PATIENT_FIELDS = [
    "patientName",
    "age",
    "gender",
    "healthIssue",
    "duration",
    "severity",
    "city",
]
KNOWN_GENDERS = {"पुरुष", "महिला", "male", "female"}
AGE_GROUPS = ["0-18", "19-35", "36-50", "51-65", "65+"]
EXPORT_COLUMNS = [
    ("SessionId", None),
    ("PatientName", "patientName"),
    ("Age", "age"),
    ("Gender", "gender"),
    ("HealthIssue", "healthIssue"),
    ("Duration", "duration"),
    ("Severity", "severity"),
    ("City", "city"),
    ("CompletedAt", None),
    ("Status", None),
]

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class ToolNotFoundError(KeyError):
    """Raised when executing a tool that was never registered."""


class Tool:
    """A named tool with a parameter description and an async handler."""

    def __init__(self, name: str, description: str, parameters: Dict[str, str], handler: ToolHandler):
        self.name = name
        self.description = description
        self.parameters = parameters
        self.handler = handler


def _age_group(age: int) -> str:
    if age <= 18:
        return "0-18"
    if age <= 35:
        return "19-35"
    if age <= 50:
        return "36-50"
    if age <= 65:
        return "51-65"
    return "65+"


def _as_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class IntakeToolRegistry:
    """Stores patient responses, records and summaries keyed by session id."""

    def __init__(self):
        self.tools: Dict[str, Tool] = {}
        self.responses: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.patient_records: Dict[str, Dict[str, Any]] = {}
        self.summaries: Dict[str, Dict[str, Any]] = {}
        self._register_default_tools()

    def _register_default_tools(self) -> None:
        self.register_tool(Tool(
            "save_patient_data",
            "Save complete patient information",
            {"sessionId": "string", "patientData": "object", "completedAt": "string", "status": "string"},
            self._save_patient_data,
        ))
        self.register_tool(Tool(
            "save_patient_response",
            "Save individual patient response",
            {"sessionId": "string", "field": "string", "value": "string", "timestamp": "string"},
            self._save_patient_response,
        ))
        self.register_tool(Tool(
            "save_conversation_summary",
            "Save conversation summary",
            {"sessionId": "string", "summary": "string", "timestamp": "string"},
            self._save_conversation_summary,
        ))
        self.register_tool(Tool(
            "validate_patient_data",
            "Validate patient data completeness and format",
            {"patientData": "object"},
            self._validate_patient_data,
        ))
        self.register_tool(Tool(
            "get_conversation_analytics",
            "Get analytics for conversations",
            {"timeRange": "string"},
            self._get_conversation_analytics,
        ))
        self.register_tool(Tool(
            "export_patient_data",
            "Export patient data in specified format",
            {"format": "string", "sessionIds": "array"},
            self._export_patient_data,
        ))

    def register_tool(self, tool: Tool) -> None:
        self.tools[tool.name] = tool

    async def execute_tool(self, name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Run a registered tool by name."""
        tool = self.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(f"Tool {name} not found")
        return await tool.handler(params)

    async def _save_patient_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session_id = params["sessionId"]
        self.patient_records[session_id] = {
            "sessionId": session_id,
            "patientData": dict(params.get("patientData") or {}),
            "completedAt": params.get("completedAt"),
            "status": params.get("status"),
            "createdAt": utcnow(),
        }
        logger.info(f"[TOOLS] Patient data saved - SessionId: {session_id}")
        return {"success": True, "message": "Patient data saved successfully", "sessionId": session_id}

    async def _save_patient_response(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session_id = params["sessionId"]
        field = params["field"]
        self.responses.setdefault(session_id, {})[field] = {
            "value": params.get("value"),
            "timestamp": params.get("timestamp") or utcnow(),
        }
        logger.info(f"[TOOLS] Response saved - SessionId: {session_id}, Field: {field}")
        return {
            "success": True,
            "message": "Response saved successfully",
            "sessionId": session_id,
            "field": field,
            "value": params.get("value"),
        }

    async def _save_conversation_summary(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session_id = params["sessionId"]
        self.summaries[session_id] = {
            "sessionId": session_id,
            "summary": params.get("summary", ""),
            "timestamp": params.get("timestamp") or utcnow(),
        }
        return {"success": True, "message": "Summary saved successfully", "sessionId": session_id}

    async def _validate_patient_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        patient_data = params.get("patientData") or {}
        validation = {"isValid": True, "missingFields": [], "invalidFields": [], "warnings": []}

        for field in REQUIRED_PATIENT_FIELDS:
            value = patient_data.get(field)
            if value is None or str(value).strip() == "":
                validation["missingFields"].append(field)
                validation["isValid"] = False

        age = patient_data.get("age")
        if age not in (None, ""):
            number = _as_number(age)
            if number is None or number < 0 or number > 120:
                validation["invalidFields"].append("age")
                validation["isValid"] = False

        severity = patient_data.get("severity")
        if severity not in (None, ""):
            number = _as_number(severity)
            if number is None or number < 1 or number > 10:
                validation["invalidFields"].append("severity")
                validation["isValid"] = False

        gender = patient_data.get("gender")
        if gender and str(gender).lower() not in KNOWN_GENDERS:
            validation["warnings"].append("gender_format")

        return validation

    async def _get_conversation_analytics(self, params: Dict[str, Any]) -> Dict[str, Any]:
        analytics = {
            "timeRange": params.get("timeRange", "all"),
            "totalConversations": len(self.patient_records),
            "completedConversations": 0,
            "commonHealthIssues": {},
            "citiesDistribution": {},
            "ageGroups": {group: 0 for group in AGE_GROUPS},
        }

        for record in self.patient_records.values():
            if record.get("status") != "completed":
                continue
            analytics["completedConversations"] += 1
            data = record["patientData"]

            health_issue = data.get("healthIssue")
            if health_issue:
                issues = analytics["commonHealthIssues"]
                issues[health_issue] = issues.get(health_issue, 0) + 1

            city = data.get("city")
            if city:
                cities = analytics["citiesDistribution"]
                cities[city] = cities.get(city, 0) + 1

            age = _as_number(data.get("age"))
            if age is not None:
                analytics["ageGroups"][_age_group(int(age))] += 1

        return analytics

    async def _export_patient_data(self, params: Dict[str, Any]) -> Dict[str, Any]:
        session_ids: Optional[List[str]] = params.get("sessionIds")
        if session_ids:
            records = [
                self.patient_records[session_id]
                for session_id in session_ids
                if session_id in self.patient_records
            ]
        else:
            records = list(self.patient_records.values())

        if params.get("format") == "csv":
            return {"format": "csv", "data": self._to_csv(records), "count": len(records)}
        return {"format": "json", "data": records, "count": len(records)}

    def _to_csv(self, records: List[Dict[str, Any]]) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow([header for header, _ in EXPORT_COLUMNS])
        for record in records:
            data = record["patientData"]
            completed_at = record.get("completedAt")
            if isinstance(completed_at, datetime):
                completed_at = completed_at.isoformat()
            row = []
            for header, key in EXPORT_COLUMNS:
                if header == "SessionId":
                    row.append(record["sessionId"])
                elif header == "CompletedAt":
                    row.append(completed_at or "")
                elif header == "Status":
                    row.append(record.get("status") or "")
                else:
                    row.append(data.get(key, ""))
            writer.writerow(row)
        return buffer.getvalue()

    def generate_summary(self, patient_data: Dict[str, Any]) -> str:
        """Plain-text summary of the extracted patient fields."""
        def field(key: str) -> str:
            value = patient_data.get(key)
            return str(value) if value not in (None, "") else "N/A"

        severity = field("severity")
        return "\n".join([
            "पेशेंट की जानकारी:",
            f"- नाम: {field('patientName')}",
            f"- उम्र: {field('age')}",
            f"- लिंग: {field('gender')}",
            f"- स्वास्थ्य समस्या: {field('healthIssue')}",
            f"- समस्या की अवधि: {field('duration')}",
            f"- तीव्रता: {severity}/10",
            f"- शहर: {field('city')}",
            f"- मूल क्वेरी: {field('query')}",
        ])
