"""
Step type registry.

Declares, for every step type, its ports, its configuration field schema
(used by palettes and forms) and a typed pydantic config model (used by the
validator to check value types and ranges).
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type, Union
from pydantic import BaseModel, ConfigDict, Field

from ..models.core import PortDataType, StepType
from .exceptions import UnknownStepTypeError


class StepCategory(str, Enum):
    """Palette categories."""
    AI = "ai"
    DATA = "data"
    CONTROL = "control"
    IO = "io"
    UTILITY = "utility"


STEP_CATEGORIES: Dict[StepCategory, Dict[str, Any]] = {
    StepCategory.AI: {"label": "AI", "order": 1},
    StepCategory.DATA: {"label": "Data", "order": 2},
    StepCategory.CONTROL: {"label": "Control Flow", "order": 3},
    StepCategory.IO: {"label": "Input/Output", "order": 4},
    StepCategory.UTILITY: {"label": "Utility", "order": 5},
}


class ConfigFieldType(str, Enum):
    """Form widget kinds for config fields."""
    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    SELECT = "select"
    MULTISELECT = "multiselect"
    CHECKBOX = "checkbox"
    MODEL_PICKER = "model-picker"
    COLLECTION_PICKER = "collection-picker"
    TEMPLATE_EDITOR = "template-editor"
    JSON_EDITOR = "json-editor"
    URL = "url"
    DURATION = "duration"


class PortDefinition(BaseModel):
    """A typed connection point on a node."""
    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    data_type: PortDataType = PortDataType.ANY
    required: bool = False
    multiple: bool = Field(False, description="Whether the port accepts more than one incoming edge")
    reserved: bool = Field(False, description="Declared for display only; the engine never activates it")


class ConfigFieldSchema(BaseModel):
    """Form description of one config parameter."""
    model_config = ConfigDict(frozen=True)

    key: str
    type: ConfigFieldType
    label: str
    description: str = ""
    required: bool = False
    default: Optional[Any] = None
    options: List[str] = Field(default_factory=list)
    minimum: Optional[float] = None
    maximum: Optional[float] = None


# ---------------------------------------------------------------------------
# Typed config models, one per step type
# ---------------------------------------------------------------------------

class StepConfig(BaseModel):
    """Base for typed step configs. Unknown keys are tolerated."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class PromptConfig(StepConfig):
    model: Optional[str] = None
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    user_prompt_template: Optional[str] = Field(None, alias="userPromptTemplate")
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, alias="maxTokens", ge=1, le=128000)
    stop_sequences: Optional[List[str]] = Field(None, alias="stopSequences")


class RagSearchConfig(StepConfig):
    collection_id: Optional[str] = Field(None, alias="collectionId")
    query_template: Optional[str] = Field(None, alias="queryTemplate")
    top_k: Optional[int] = Field(None, alias="topK", ge=1, le=100)
    min_score: Optional[float] = Field(None, alias="minScore", ge=0, le=1)


class MediaIngestConfig(StepConfig):
    source_type: Optional[Literal["url", "file"]] = Field(None, alias="sourceType")
    url: Optional[str] = None
    extract_audio: Optional[bool] = Field(None, alias="extractAudio")
    transcribe: Optional[bool] = None
    chunking_strategy: Optional[Literal["sentence", "paragraph", "fixed"]] = Field(None, alias="chunkingStrategy")


class BranchCondition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    expression: str
    output_id: str = Field(..., alias="outputId")


class BranchConfig(StepConfig):
    conditions: Optional[List[BranchCondition]] = None
    default_output_id: Optional[str] = Field(None, alias="defaultOutputId")


class MapConfig(StepConfig):
    array_path: Optional[str] = Field(None, alias="arrayPath")
    item_variable: Optional[str] = Field(None, alias="itemVariable")
    max_parallel: Optional[int] = Field(None, alias="maxParallel", ge=1, le=50)


class WaitForHumanConfig(StepConfig):
    prompt_message: Optional[str] = Field(None, alias="promptMessage")
    allow_edit: Optional[bool] = Field(None, alias="allowEdit")
    editable_fields: Optional[List[str]] = Field(None, alias="editableFields")
    timeout_seconds: Optional[float] = Field(None, alias="timeoutSeconds", ge=0)
    default_action: Optional[Literal["approve", "reject"]] = Field(None, alias="defaultAction")


class WebhookConfig(StepConfig):
    url: Optional[str] = None
    method: Optional[Literal["GET", "POST", "PUT", "PATCH", "DELETE"]] = None
    headers: Optional[Dict[str, str]] = None
    body_template: Optional[str] = Field(None, alias="bodyTemplate")
    response_mapping: Optional[str] = Field(None, alias="responseMapping")


class TtsConfig(StepConfig):
    voice: Optional[Literal["alloy", "echo", "fable", "onyx", "nova", "shimmer"]] = None
    speed: Optional[float] = Field(None, ge=0.25, le=4.0)
    format: Optional[Literal["mp3", "opus", "aac", "flac", "wav", "pcm"]] = None


class SttTranscribeConfig(StepConfig):
    model: Optional[str] = None
    language: Optional[str] = None
    punctuate: Optional[bool] = None


class DelayConfig(StepConfig):
    duration_seconds: Optional[float] = Field(None, alias="durationSeconds", ge=0, le=3600)


class LogConfig(StepConfig):
    level: Optional[Literal["debug", "info", "warn", "error"]] = None
    message_template: Optional[str] = Field(None, alias="messageTemplate")


class StartConfig(StepConfig):
    input_schema: Optional[Dict[str, Any]] = Field(None, alias="inputSchema")


class EndConfig(StepConfig):
    output_mapping: Optional[str] = Field(None, alias="outputMapping")


AnyStepConfig = Union[
    PromptConfig, RagSearchConfig, MediaIngestConfig, BranchConfig, MapConfig,
    WaitForHumanConfig, WebhookConfig, TtsConfig, SttTranscribeConfig,
    DelayConfig, LogConfig, StartConfig, EndConfig,
]


class StepTypeMetadata(BaseModel):
    """Everything the engine knows about a step type."""
    model_config = ConfigDict(frozen=True)

    type: StepType
    label: str
    description: str
    category: StepCategory
    inputs: List[PortDefinition] = Field(default_factory=list)
    outputs: List[PortDefinition] = Field(default_factory=list)
    config_schema: List[ConfigFieldSchema] = Field(default_factory=list)
    config_model: Type[StepConfig] = StepConfig

    def input_port(self, port_id: str) -> Optional[PortDefinition]:
        return next((p for p in self.inputs if p.id == port_id), None)

    def output_port(self, port_id: str) -> Optional[PortDefinition]:
        return next((p for p in self.outputs if p.id == port_id), None)

    @property
    def required_fields(self) -> List[ConfigFieldSchema]:
        return [f for f in self.config_schema if f.required]


def _port(port_id: str, label: str, data_type: PortDataType = PortDataType.ANY, **kwargs) -> PortDefinition:
    return PortDefinition(id=port_id, label=label, data_type=data_type, **kwargs)


def _field(key: str, field_type: ConfigFieldType, label: str, **kwargs) -> ConfigFieldSchema:
    return ConfigFieldSchema(key=key, type=field_type, label=label, **kwargs)


F = ConfigFieldType
P = PortDataType

STEP_REGISTRY: Dict[StepType, StepTypeMetadata] = {
    StepType.PROMPT: StepTypeMetadata(
        type=StepType.PROMPT,
        label="LLM Prompt",
        description="Generate text using a language model with templated prompts",
        category=StepCategory.AI,
        inputs=[_port("input", "Input", required=True)],
        outputs=[_port("output", "Output", P.STRING)],
        config_schema=[
            _field("model", F.MODEL_PICKER, "Model", required=True),
            _field("systemPrompt", F.TEXTAREA, "System Prompt", default="You are a helpful assistant."),
            _field("userPromptTemplate", F.TEMPLATE_EDITOR, "User Prompt Template", required=True,
                   description="Use {{variable}} for placeholders."),
            _field("temperature", F.NUMBER, "Temperature", default=0.7, minimum=0, maximum=2),
            _field("maxTokens", F.NUMBER, "Max Tokens", default=1024, minimum=1, maximum=128000),
        ],
        config_model=PromptConfig,
    ),
    StepType.RAG_SEARCH: StepTypeMetadata(
        type=StepType.RAG_SEARCH,
        label="RAG Search",
        description="Search your knowledge base for relevant documents",
        category=StepCategory.DATA,
        inputs=[_port("query", "Query", P.STRING, required=True)],
        outputs=[_port("results", "Results", P.ARRAY)],
        config_schema=[
            _field("collectionId", F.COLLECTION_PICKER, "Collection", required=True),
            _field("queryTemplate", F.TEMPLATE_EDITOR, "Query Template"),
            _field("topK", F.NUMBER, "Top K Results", default=5, minimum=1, maximum=100),
            _field("minScore", F.NUMBER, "Minimum Score", default=0.5, minimum=0, maximum=1),
        ],
        config_model=RagSearchConfig,
    ),
    StepType.MEDIA_INGEST: StepTypeMetadata(
        type=StepType.MEDIA_INGEST,
        label="Media Ingest",
        description="Process videos, audio files, or other media",
        category=StepCategory.DATA,
        inputs=[_port("source", "Source")],
        outputs=[_port("content", "Content", P.OBJECT), _port("transcript", "Transcript", P.STRING)],
        config_schema=[
            _field("sourceType", F.SELECT, "Source Type", default="url", options=["url", "file"]),
            _field("url", F.URL, "Media URL"),
            _field("extractAudio", F.CHECKBOX, "Extract Audio", default=True),
            _field("transcribe", F.CHECKBOX, "Transcribe Audio", default=True),
            _field("chunkingStrategy", F.SELECT, "Chunking Strategy", default="paragraph",
                   options=["sentence", "paragraph", "fixed"]),
        ],
        config_model=MediaIngestConfig,
    ),
    StepType.BRANCH: StepTypeMetadata(
        type=StepType.BRANCH,
        label="Branch",
        description="Conditional routing based on expressions",
        category=StepCategory.CONTROL,
        inputs=[_port("input", "Input", required=True)],
        outputs=[
            _port("true", "True", P.CONTROL),
            _port("false", "False", P.CONTROL),
            _port("default", "Default", P.CONTROL),
        ],
        config_schema=[
            _field("conditions", F.JSON_EDITOR, "Conditions",
                   default=[{"id": "cond-1", "expression": "input.value > 0", "outputId": "true"}]),
            _field("defaultOutputId", F.TEXT, "Default Output", default="false"),
        ],
        config_model=BranchConfig,
    ),
    StepType.MAP: StepTypeMetadata(
        type=StepType.MAP,
        label="Map",
        description="Process each item in an array (fan-out)",
        category=StepCategory.CONTROL,
        inputs=[_port("array", "Array", P.ARRAY, required=True)],
        outputs=[_port("item", "Item"), _port("results", "Results", P.ARRAY)],
        config_schema=[
            _field("arrayPath", F.TEXT, "Array Path", default="input"),
            _field("itemVariable", F.TEXT, "Item Variable", default="item"),
            _field("maxParallel", F.NUMBER, "Max Parallel", default=5, minimum=1, maximum=50),
        ],
        config_model=MapConfig,
    ),
    StepType.WAIT_FOR_HUMAN: StepTypeMetadata(
        type=StepType.WAIT_FOR_HUMAN,
        label="Human Approval",
        description="Pause workflow and wait for human approval",
        category=StepCategory.CONTROL,
        inputs=[_port("data", "Data", required=True)],
        # A rejection fails the node, so nothing ever leaves "rejected"
        outputs=[_port("approved", "Approved"), _port("rejected", "Rejected", reserved=True)],
        config_schema=[
            _field("promptMessage", F.TEXTAREA, "Approval Prompt", required=True),
            _field("allowEdit", F.CHECKBOX, "Allow Editing", default=True),
            _field("editableFields", F.MULTISELECT, "Editable Fields"),
            _field("timeoutSeconds", F.NUMBER, "Timeout (seconds)", default=0, minimum=0,
                   description="Auto-action after timeout (0 = no timeout)"),
            _field("defaultAction", F.SELECT, "Default Action", default="reject",
                   options=["approve", "reject"]),
        ],
        config_model=WaitForHumanConfig,
    ),
    StepType.WEBHOOK: StepTypeMetadata(
        type=StepType.WEBHOOK,
        label="Webhook",
        description="Make HTTP requests to external APIs",
        category=StepCategory.IO,
        inputs=[_port("data", "Data")],
        outputs=[_port("response", "Response", P.OBJECT)],
        config_schema=[
            _field("url", F.URL, "URL", required=True),
            _field("method", F.SELECT, "Method", default="POST",
                   options=["GET", "POST", "PUT", "PATCH", "DELETE"]),
            _field("headers", F.JSON_EDITOR, "Headers", default={"Content-Type": "application/json"}),
            _field("bodyTemplate", F.TEMPLATE_EDITOR, "Body Template"),
            _field("responseMapping", F.TEXT, "Response Mapping"),
        ],
        config_model=WebhookConfig,
    ),
    StepType.TTS: StepTypeMetadata(
        type=StepType.TTS,
        label="Text to Speech",
        description="Convert text to audio",
        category=StepCategory.IO,
        inputs=[_port("text", "Text", P.STRING, required=True)],
        outputs=[_port("audio", "Audio", P.AUDIO)],
        config_schema=[
            _field("voice", F.SELECT, "Voice", default="alloy",
                   options=["alloy", "echo", "fable", "onyx", "nova", "shimmer"]),
            _field("speed", F.NUMBER, "Speed", default=1.0, minimum=0.25, maximum=4.0),
            _field("format", F.SELECT, "Output Format", default="mp3",
                   options=["mp3", "opus", "aac", "flac", "wav", "pcm"]),
        ],
        config_model=TtsConfig,
    ),
    StepType.STT_TRANSCRIBE: StepTypeMetadata(
        type=StepType.STT_TRANSCRIBE,
        label="Transcribe",
        description="Convert audio to text",
        category=StepCategory.IO,
        inputs=[_port("audio", "Audio", P.AUDIO, required=True)],
        outputs=[_port("text", "Text", P.STRING)],
        config_schema=[
            _field("model", F.SELECT, "Model", default="whisper-1", options=["whisper-1"]),
            _field("language", F.TEXT, "Language", description="ISO language code (e.g., en, es, fr)"),
            _field("punctuate", F.CHECKBOX, "Add Punctuation", default=True),
        ],
        config_model=SttTranscribeConfig,
    ),
    StepType.DELAY: StepTypeMetadata(
        type=StepType.DELAY,
        label="Delay",
        description="Wait for a specified duration",
        category=StepCategory.UTILITY,
        inputs=[_port("input", "Input")],
        outputs=[_port("output", "Output")],
        config_schema=[
            _field("durationSeconds", F.DURATION, "Duration", default=5, minimum=0, maximum=3600),
        ],
        config_model=DelayConfig,
    ),
    StepType.LOG: StepTypeMetadata(
        type=StepType.LOG,
        label="Log",
        description="Output debug information",
        category=StepCategory.UTILITY,
        inputs=[_port("data", "Data")],
        outputs=[_port("passthrough", "Passthrough")],
        config_schema=[
            _field("level", F.SELECT, "Log Level", default="info", options=["debug", "info", "warn", "error"]),
            _field("messageTemplate", F.TEMPLATE_EDITOR, "Message Template"),
        ],
        config_model=LogConfig,
    ),
    StepType.START: StepTypeMetadata(
        type=StepType.START,
        label="Start",
        description="Entry point of the workflow",
        category=StepCategory.CONTROL,
        inputs=[],
        outputs=[_port("output", "Output")],
        config_schema=[_field("inputSchema", F.JSON_EDITOR, "Input Schema")],
        config_model=StartConfig,
    ),
    StepType.END: StepTypeMetadata(
        type=StepType.END,
        label="End",
        description="Exit point of the workflow",
        category=StepCategory.CONTROL,
        # Converging branches join at the end node.
        inputs=[_port("input", "Input", required=True, multiple=True)],
        outputs=[],
        config_schema=[_field("outputMapping", F.TEXT, "Output Mapping")],
        config_model=EndConfig,
    ),
}


def coerce_step_type(step_type: Union[StepType, str]) -> StepType:
    """Resolve a step type name, raising UnknownStepTypeError if it is not registered."""
    try:
        resolved = StepType(step_type)
    except ValueError:
        raise UnknownStepTypeError(str(step_type))
    if resolved not in STEP_REGISTRY:
        raise UnknownStepTypeError(resolved.value)
    return resolved


def get_step_metadata(step_type: Union[StepType, str]) -> StepTypeMetadata:
    return STEP_REGISTRY[coerce_step_type(step_type)]


def default_config(step_type: Union[StepType, str]) -> Dict[str, Any]:
    """Config populated with the schema defaults of a step type."""
    metadata = get_step_metadata(step_type)
    return {
        f.key: f.default
        for f in metadata.config_schema
        if f.default is not None
    }


def default_label(step_type: Union[StepType, str]) -> str:
    return get_step_metadata(step_type).label


def get_all_steps() -> List[StepTypeMetadata]:
    return list(STEP_REGISTRY.values())


def get_addable_steps() -> List[StepTypeMetadata]:
    """Steps a palette offers; start and end are created with the workflow."""
    return [s for s in STEP_REGISTRY.values() if s.type not in (StepType.START, StepType.END)]


def get_categorized_steps() -> List[Dict[str, Any]]:
    categories = []
    for category, meta in sorted(STEP_CATEGORIES.items(), key=lambda item: item[1]["order"]):
        steps = [s for s in get_addable_steps() if s.category == category]
        if steps:
            categories.append({"category": category, "label": meta["label"], "steps": steps})
    return categories


def ports_compatible(source: PortDefinition, target: PortDefinition) -> bool:
    """Two ports can be connected when their data types match exactly or either is ``any``."""
    return (
        source.data_type == target.data_type
        or source.data_type == PortDataType.ANY
        or target.data_type == PortDataType.ANY
    )
