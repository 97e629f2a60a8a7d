from typing import List, Dict, Optional, Union, Literal
from pydantic import BaseModel, Field

class Message(BaseModel):
    role: str
    content: Union[str, List[Dict], None] = ""

class ChatCompletionRequest(BaseModel):
    # 不设默认值：未出现的参数不会被转发给 Gemini
    model: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    stream: bool = False
    stop: Optional[Union[str, List[str]]] = None
    max_tokens: Optional[int] = None

class ResponseMessage(BaseModel):
    role: str = "assistant"
    content: str = ""

class Choice(BaseModel):
    index: int
    message: ResponseMessage
    finish_reason: Optional[str] = None

class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

class ChatCompletionResponse(BaseModel):
    id: str
    object: Literal["chat.completion"] = "chat.completion"
    created: int
    model: str
    choices: List[Choice]
    usage: Usage = Field(default_factory=Usage)

class ChunkChoice(BaseModel):
    index: int = 0
    delta: Dict[str, str] = Field(default_factory=dict)
    finish_reason: Optional[str] = None

class ChatCompletionChunk(BaseModel):
    id: str
    object: Literal["chat.completion.chunk"] = "chat.completion.chunk"
    created: int
    model: str
    choices: List[ChunkChoice]

class ErrorResponse(BaseModel):
    message: str
    type: Optional[str] = None
    code: Optional[Union[str, int]] = None
