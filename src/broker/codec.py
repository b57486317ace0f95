"""
Wire encoding of tasks.

Message bodies are UTF-8 JSON documents produced from the Task model with
its camelCase aliases.
"""

from pydantic_core import PydanticSerializationError

from src.constants import CONTENT_TYPE_JSON
from src.errors import DeserializationError, SerializationError
from src.types.task import Task


def serialize_task(task: Task) -> bytes:
    """
    Encode a task into a message body.

    Args:
        task: The task to encode.

    Returns:
        UTF-8 encoded JSON.

    Raises:
        SerializationError: If the payload holds values JSON cannot represent.
    """
    try:
        return task.model_dump_json(by_alias=True).encode("utf-8")
    except PydanticSerializationError as e:
        raise SerializationError(f"Task {task.id} cannot be serialized: {e}") from e


def deserialize_task(body: bytes, content_type: str = CONTENT_TYPE_JSON) -> Task:
    """
    Decode a message body into a task.

    Args:
        body: The raw message body.
        content_type: Content type recorded on the message.

    Returns:
        The decoded Task.

    Raises:
        DeserializationError: If the body is not a valid task document.
    """
    if content_type != CONTENT_TYPE_JSON:
        raise DeserializationError(f"Unsupported content type: {content_type}")

    try:
        return Task.model_validate_json(body)
    except ValueError as e:
        # ValidationError and UnicodeDecodeError are both ValueErrors
        raise DeserializationError(f"Malformed task body: {e}") from e
