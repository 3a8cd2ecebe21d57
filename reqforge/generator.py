import json
import logging
import re
from enum import Enum
from textwrap import dedent
from typing import Any, Dict, List, Optional

from google import genai
from pydantic import ValidationError

from .config import GEMINI_MODEL, Credentials
from .errors import GenerationError, MalformedGenerationOutput
from .models import QueryParam, RequestNode

logger = logging.getLogger(__name__)

MAX_QUERY_PARAMS = 3


class GenerationKind(str, Enum):
    EXAMPLE_BODY = "exampleBody"
    EXAMPLE_QUERY_PARAMS = "exampleQueryParams"
    TEST_SCRIPT = "testScript"
    SECURITY_AUDIT = "securityAudit"
    API_DOCS = "apiDocs"
    COLLECTION_ANALYSIS = "collectionAnalysis"


# --- Prompts ---

def _example_body_prompt(facts: Dict[str, Any]) -> str:
    prompt = dedent(f"""
    You are an API testing assistant. Generate a realistic, example JSON request body.
    - ONLY output the raw JSON body.
    - Do not include any explanation, markdown (like ```json), or text other than the JSON itself.
    - The JSON should be appropriate for this request:
    Request Name: "{facts.get('name', '')}"
    Method: {facts.get('method', '')}
    Path: "{facts.get('path', '')}"
    """)
    if facts.get("originalBody") is not None:
        prompt += dedent(f"""
        The original request has this structure, use it as a reference for the keys, but generate new, realistic values:
        {json.dumps(facts['originalBody'], indent=2)}
        """)
    return prompt + "\nExample JSON Body:\n"


def _query_params_prompt(facts: Dict[str, Any]) -> str:
    return dedent(f"""
    You are an API testing assistant. For the following GET request, suggest 1 to 3 realistic query parameters.
    - ONLY output a valid JSON array of objects, where each object has a "key" and a "value" property.
    - Do not include any explanation or other text.
    - If no parameters seem logical, return an empty array [].

    Request Name: "{facts.get('name', '')}"
    Path: "{facts.get('path', '')}"

    Example JSON Array:
    """)


def _test_script_prompt(facts: Dict[str, Any]) -> str:
    return dedent(f"""
    You are an API testing assistant. Write a Postman test script (JavaScript, using pm.test and pm.expect)
    for the request below. Cover the status code, response time and the shape of a successful response.
    - ONLY output the JavaScript code, no markdown fences or commentary.

    Request:
    {json.dumps(facts, indent=2)}
    """)


def _security_audit_prompt(facts: Dict[str, Any]) -> str:
    return dedent(f"""
    As an expert API security and performance reviewer, audit the following Postman collection.
    Point out missing or weak authentication, sensitive data in URLs or headers, inconsistent
    endpoint design and likely performance problems. Finish with prioritised recommendations.

    {facts.get('summary', '')}

    Your audit report:
    """)


def _api_docs_prompt(facts: Dict[str, Any]) -> str:
    return dedent(f"""
    You are a technical writer. Write developer documentation in Markdown for the API described by
    this Postman collection: an overview, then one section per endpoint with its method, URL,
    authentication and headers.

    {facts.get('summary', '')}

    Documentation:
    """)


def _analysis_prompt(facts: Dict[str, Any]) -> str:
    return dedent(f"""
    As an expert API analyst, analyze the following Postman collection summary.
    Provide a concise, high-level explanation of the API's primary purpose and functionality.
    Use the endpoint details, including any specified request body keys, to inform your analysis.

    Collection Summary:
    {facts.get('summary', '')}

    Your analysis:
    """)


PROMPTS = {
    GenerationKind.EXAMPLE_BODY: _example_body_prompt,
    GenerationKind.EXAMPLE_QUERY_PARAMS: _query_params_prompt,
    GenerationKind.TEST_SCRIPT: _test_script_prompt,
    GenerationKind.SECURITY_AUDIT: _security_audit_prompt,
    GenerationKind.API_DOCS: _api_docs_prompt,
    GenerationKind.COLLECTION_ANALYSIS: _analysis_prompt,
}


class ContentGenerator:
    """Gemini-backed text generation. ``generate`` returns the model's raw text."""

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        model: str = GEMINI_MODEL,
        client: Optional[Any] = None,
    ):
        self.model = model
        if client is None:
            client = genai.Client(api_key=(credentials or Credentials()).require_google_key())
        self._client = client

    async def generate(self, kind: GenerationKind, facts: Dict[str, Any]) -> str:
        prompt = PROMPTS[GenerationKind(kind)](facts)
        try:
            response = await self._client.aio.models.generate_content(model=self.model, contents=prompt)
        except Exception as e:
            logger.error("Error generating %s: %s", GenerationKind(kind).value, e)
            raise GenerationError(f"Failed to generate {GenerationKind(kind).value} from Gemini API: {e}") from e
        return response.text or ""


# --- Output parsing ---

_FENCE_RE = re.compile(r"```[a-zA-Z]*")
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def parse_json_body(text: str) -> Any:
    cleaned = strip_code_fences(text)
    try:
        value = json.loads(cleaned)
    except ValueError as e:
        raise MalformedGenerationOutput(GenerationKind.EXAMPLE_BODY.value, text) from e
    if not isinstance(value, (dict, list)):
        raise MalformedGenerationOutput(GenerationKind.EXAMPLE_BODY.value, text)
    return value


def parse_query_params(text: str) -> List[QueryParam]:
    match = _ARRAY_RE.search(text)
    if not match:
        raise MalformedGenerationOutput(GenerationKind.EXAMPLE_QUERY_PARAMS.value, text)
    try:
        raw = json.loads(match.group(0))
        if not isinstance(raw, list):
            raise ValueError("not a list")
        params = [QueryParam.model_validate(p) for p in raw]
        if any(not p.key for p in params):
            raise ValueError("query param without a key")
    except (ValueError, ValidationError) as e:
        raise MalformedGenerationOutput(GenerationKind.EXAMPLE_QUERY_PARAMS.value, text) from e
    return params[:MAX_QUERY_PARAMS]


# --- Typed helpers used by the engine ---

async def example_body(generator: Any, facts: Dict[str, Any]) -> Optional[Any]:
    """Example JSON body for a write request, or None when the output is unusable."""
    text = await generator.generate(GenerationKind.EXAMPLE_BODY, facts)
    try:
        return parse_json_body(text)
    except MalformedGenerationOutput as e:
        logger.warning("Keeping original body for %r: %s", facts.get("name"), e)
        return None


async def example_query_params(generator: Any, facts: Dict[str, Any]) -> List[QueryParam]:
    text = await generator.generate(GenerationKind.EXAMPLE_QUERY_PARAMS, facts)
    try:
        return parse_query_params(text)
    except MalformedGenerationOutput as e:
        logger.warning("No query params for %r: %s", facts.get("name"), e)
        return []


async def write_test_script(generator: Any, node: RequestNode) -> str:
    facts = {
        "name": node.name,
        "method": node.method,
        "url": node.url.display() if node.url else None,
        "headers": [h.key for h in node.header or [] if h.key],
        "body": node.body.raw if node.body else None,
    }
    text = await generator.generate(GenerationKind.TEST_SCRIPT, facts)
    script = strip_code_fences(text)
    if not script:
        raise MalformedGenerationOutput(GenerationKind.TEST_SCRIPT.value, text)
    return script

