import json
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from openai import APIError, OpenAI

from .errors import ConfigurationError, ModelEndpointError


@dataclass
class RequestedToolCall:
    """One tool call requested by the model. `arguments` is the raw JSON string."""
    id: str
    name: str
    arguments: str

    def to_dict(self):
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ModelReply:
    content: str
    tool_calls: list[RequestedToolCall] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)

    def to_dict(self):
        return {
            "content": self.content,
            "tool_calls": [tc.to_dict() for tc in self.tool_calls],
            "usage": self.usage,
        }


class ModelClient(ABC):
    """Chat-completions endpoint: send messages + tool schema, get one assistant message back.

    Messages use the OpenAI chat format (dicts with role/content, assistant
    `tool_calls`, and `tool` result messages). Implementations raise
    ModelEndpointError for any transport or payload failure.
    """

    model: str
    endpoint_url: str

    @abstractmethod
    def create_completion(
        self,
        messages: list[dict],
        tools: list[dict],
        temperature: float = 0.0,
        max_tokens: int = 0,
    ) -> ModelReply:
        ...


class OpenAIChatClient(ModelClient):
    """OpenAI-compatible endpoint (OpenAI, Docker Model Runner, Ollama, llama.cpp, vLLM...)."""

    def __init__(self, model: str, api_key: str, base_url: str):
        self.model = model
        self.endpoint_url = f"{base_url.rstrip('/')}/chat/completions"

        kwargs: dict[str, Any] = {"api_key": api_key or "not-needed", "base_url": base_url}
        # Local HTTPS gateways use self-signed certificates
        if base_url.startswith("https://localhost") or "https://127.0.0.1" in base_url:
            kwargs["http_client"] = httpx.Client(verify=False)
        self.client = OpenAI(**kwargs)

    def create_completion(self, messages, tools, temperature=0.0, max_tokens=0) -> ModelReply:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "tools": tools,
            "temperature": temperature,
        }
        if max_tokens > 0:
            kwargs["max_tokens"] = max_tokens

        try:
            response = self.client.chat.completions.create(**kwargs)
        except APIError as e:
            raise ModelEndpointError(f"failed to get AI response: {e}") from e

        if not response.choices:
            raise ModelEndpointError("failed to get AI response: response contained no choices")
        message = response.choices[0].message

        tool_calls = []
        for tc in message.tool_calls or []:
            arguments = tc.function.arguments
            if not isinstance(arguments, str):
                arguments = json.dumps(arguments)
            tool_calls.append(RequestedToolCall(id=tc.id, name=tc.function.name, arguments=arguments))

        usage = {}
        if response.usage:
            usage = {
                "prompt_tokens": response.usage.prompt_tokens,
                "completion_tokens": response.usage.completion_tokens,
                "total_tokens": response.usage.total_tokens,
            }

        return ModelReply(content=message.content or "", tool_calls=tool_calls, usage=usage)


class BedrockClient(ModelClient):
    """Bedrock client for Converse API with tool calling."""

    def __init__(self, model_id: str, client=None):
        region = os.getenv("AWS_REGION", "us-east-1")
        self.client = client or boto3.client(
            "bedrock-runtime",
            aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            region_name=region,
        )
        self.model = model_id
        self.endpoint_url = f"bedrock-runtime.{region}/model/{model_id}/converse"

    @staticmethod
    def convert_tools(tools: list[dict]) -> list[dict]:
        """Convert OpenAI tool format to Bedrock format."""
        bedrock_tools = []
        for tool in tools:
            func = tool["function"]
            bedrock_tools.append({
                "toolSpec": {
                    "name": func["name"],
                    "description": func["description"],
                    "inputSchema": {"json": func["parameters"]},
                }
            })
        return bedrock_tools

    @staticmethod
    def convert_messages(messages: list[dict]) -> tuple[list[dict], list[dict]]:
        """Convert OpenAI messages to Bedrock (system prompts, messages)."""
        bedrock_messages = []
        system_prompts = []
        i = 0

        while i < len(messages):
            msg = messages[i]
            role = msg["role"]
            content = msg.get("content") or ""

            if role == "system":
                system_prompts.append({"text": content})
                i += 1
            elif role == "user":
                bedrock_messages.append({"role": "user", "content": [{"text": content}]})
                i += 1
            elif role == "assistant":
                bedrock_content = []
                if content:
                    bedrock_content.append({"text": content})
                for tc in msg.get("tool_calls") or []:
                    func = tc["function"]
                    try:
                        tool_input = json.loads(func["arguments"]) if func["arguments"] else {}
                    except json.JSONDecodeError:
                        tool_input = {}
                    bedrock_content.append({
                        "toolUse": {"toolUseId": tc["id"], "name": func["name"], "input": tool_input}
                    })
                bedrock_messages.append({"role": "assistant", "content": bedrock_content})
                i += 1
            elif role == "tool":
                # Consecutive tool results go back as a single user message
                tool_results = []
                while i < len(messages) and messages[i]["role"] == "tool":
                    tool_results.append({
                        "toolResult": {
                            "toolUseId": messages[i]["tool_call_id"],
                            "content": [{"text": messages[i]["content"]}],
                        }
                    })
                    i += 1
                bedrock_messages.append({"role": "user", "content": tool_results})
            else:
                i += 1

        return system_prompts, bedrock_messages

    def create_completion(self, messages, tools, temperature=0.0, max_tokens=0) -> ModelReply:
        system_prompts, bedrock_messages = self.convert_messages(messages)

        inference_config: dict[str, Any] = {"temperature": temperature}
        if max_tokens > 0:
            inference_config["maxTokens"] = max_tokens

        kwargs = {
            "modelId": self.model,
            "messages": bedrock_messages,
            "toolConfig": {"tools": self.convert_tools(tools)},
            "inferenceConfig": inference_config,
        }
        if system_prompts:
            kwargs["system"] = system_prompts

        try:
            response = self.client.converse(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise ModelEndpointError(f"failed to get AI response: {e}") from e

        try:
            output = response["output"]["message"]
            content = ""
            tool_calls = []
            for item in output["content"]:
                if "text" in item:
                    content = item["text"]
                elif "toolUse" in item:
                    tool_use = item["toolUse"]
                    tool_calls.append(RequestedToolCall(
                        id=tool_use["toolUseId"],
                        name=tool_use["name"],
                        arguments=json.dumps(tool_use["input"]),
                    ))
        except (KeyError, TypeError) as e:
            raise ModelEndpointError(f"malformed Bedrock response: missing {e}") from e

        usage = response.get("usage") or {}
        return ModelReply(
            content=content,
            tool_calls=tool_calls,
            usage={
                "prompt_tokens": usage.get("inputTokens", 0),
                "completion_tokens": usage.get("outputTokens", 0),
                "total_tokens": usage.get("totalTokens", 0),
            },
        )


def generate_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def create_client(model: str, api_key: str = "", base_url: str = "", host: str = "localhost") -> ModelClient:
    """Build the client for a model identifier, routing on its backend prefix."""
    if not model:
        raise ConfigurationError("no model specified")

    if model.startswith("bedrock/"):
        return BedrockClient(model.removeprefix("bedrock/"))
    if model.startswith("llama.cpp/"):
        return OpenAIChatClient(model.removeprefix("llama.cpp/"), api_key or "not-needed",
                                f"http://{host}:8080/v1")
    if model.startswith("ollama/"):
        return OpenAIChatClient(model.removeprefix("ollama/"), api_key or "ollama",
                                f"http://{host}:11434/v1")
    if not base_url:
        raise ConfigurationError(f"no base URL for model {model!r}")
    return OpenAIChatClient(model, api_key, base_url)
