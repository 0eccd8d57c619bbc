"""Remoting command model and the two wire codecs (JSON and binary)."""

from __future__ import annotations

import abc
import enum
import json
import struct
import threading
from dataclasses import dataclass, field
from typing import BinaryIO, Mapping, Optional, Protocol

RPC_TYPE = 0
RPC_ONE_WAY = 1
RESPONSE_TYPE = 1
DEFAULT_FLAG = 0
DEFAULT_VERSION = 317

# code(2) + language(1) + version(2) + opaque(4) + flag(4) + remark len(4) + ext len(4)
HEADER_FIXED_LENGTH = 21

_FIXED = struct.Struct(">hBhii")
_INT32 = struct.Struct(">i")
_INT16 = struct.Struct(">h")


class LanguageCode(enum.IntEnum):
    """Language flag carried in every command header."""

    JAVA = 0
    GO = 9
    UNKNOWN = 127

    @classmethod
    def from_name(cls, name: object) -> "LanguageCode":
        if name == "JAVA":
            return cls.JAVA
        if name == "GO":
            return cls.GO
        return cls.UNKNOWN

    @classmethod
    def from_byte(cls, value: int) -> "LanguageCode":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN

    def __str__(self) -> str:
        if self is LanguageCode.JAVA:
            return "JAVA"
        if self is LanguageCode.GO:
            return "GO"
        return "unknown"


class CodecType(enum.IntEnum):
    """Serialisation used for a command header."""

    JSON = 0
    ROCKETMQ = 1


class CustomHeader(Protocol):
    def encode(self) -> Mapping[str, str]: ...


@dataclass
class RemotingCommand:
    """A single request or response exchanged with a server."""

    code: int = 0
    language: LanguageCode = LanguageCode.GO
    version: int = 0
    opaque: int = 0
    flag: int = 0
    remark: str = ""
    ext_fields: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def is_response_type(self) -> bool:
        return self.flag & RESPONSE_TYPE == RESPONSE_TYPE

    def mark_response_type(self) -> None:
        self.flag |= RESPONSE_TYPE

    def write_to(self, stream: BinaryIO, codec_type: CodecType = CodecType.JSON) -> None:
        """Write the framed command to a binary stream."""
        stream.write(encode(self, codec_type))

    def __str__(self) -> str:
        fields = " ".join(f"{k}:{v}" for k, v in self.ext_fields.items())
        return (
            f"Code: {self.code}, opaque: {self.opaque}, "
            f"Remark: {self.remark}, ExtFields: map[{fields}]"
        )


_opaque_lock = threading.Lock()
_opaque = 0


def _next_opaque() -> int:
    global _opaque
    with _opaque_lock:
        value = (_opaque + 1) & 0xFFFFFFFF
        if value >= 0x80000000:
            value -= 0x100000000
        _opaque = value
        return value


def new_remoting_command(
    code: int, header: Optional[CustomHeader] = None, body: Optional[bytes] = None
) -> RemotingCommand:
    """Create a request command with a fresh opaque id."""
    ext_fields = dict(header.encode()) if header is not None else {}
    return RemotingCommand(
        code=code,
        language=LanguageCode.GO,
        version=DEFAULT_VERSION,
        opaque=_next_opaque(),
        body=bytes(body) if body is not None else b"",
        ext_fields=ext_fields,
    )


def mark_protocol_type(source: int, codec_type: CodecType = CodecType.JSON) -> bytes:
    """Header-length word: codec type in the top byte, length in the low 24 bits."""
    return bytes(
        [int(codec_type) & 0xFF, (source >> 16) & 0xFF, (source >> 8) & 0xFF, source & 0xFF]
    )


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._view = memoryview(data)
        self._pos = 0

    @property
    def remaining(self) -> int:
        return len(self._view) - self._pos

    def read(self, size: int) -> bytes:
        if size < 0 or size > self.remaining:
            raise ValueError("unexpected EOF")
        chunk = bytes(self._view[self._pos : self._pos + size])
        self._pos += size
        return chunk

    def unpack(self, fmt: struct.Struct) -> tuple:
        return fmt.unpack(self.read(fmt.size))


class JsonCodec:
    """Header serialisation as a JSON object."""

    def encode_header(self, command: RemotingCommand) -> bytes:
        doc = {
            "code": command.code,
            "language": "GO",
            "version": command.version,
            "opaque": command.opaque,
            "flag": command.flag,
            "remark": command.remark,
            "extFields": command.ext_fields,
        }
        return json.dumps(doc, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def decode_header(self, data: bytes) -> RemotingCommand:
        doc = json.loads(data.decode("utf-8"))
        if not isinstance(doc, dict):
            raise ValueError("command header is not a JSON object")
        ext = doc.get("extFields") or {}
        return RemotingCommand(
            code=int(doc.get("code", 0)),
            language=LanguageCode.from_name(doc.get("language")),
            version=int(doc.get("version", 0)),
            opaque=int(doc.get("opaque", 0)),
            flag=int(doc.get("flag", 0)),
            remark=doc.get("remark") or "",
            ext_fields={str(k): str(v) for k, v in ext.items()},
            body=b"",
        )


class RocketMQCodec:
    """Compact binary header serialisation."""

    def encode_header(self, command: RemotingCommand) -> bytes:
        ext = self._encode_maps(command.ext_fields)
        remark = command.remark.encode("utf-8")
        try:
            parts = [
                _FIXED.pack(
                    command.code,
                    int(LanguageCode.GO),
                    command.version,
                    command.opaque,
                    command.flag,
                ),
                _INT32.pack(len(remark)),
                remark,
                _INT32.pack(len(ext)),
                ext,
            ]
        except struct.error as exc:
            raise ValueError(f"command field out of range: {exc}") from exc
        return b"".join(parts)

    @staticmethod
    def _encode_maps(maps: Optional[Mapping[str, str]]) -> bytes:
        if not maps:
            return b""
        out = bytearray()
        for key, value in maps.items():
            kb = key.encode("utf-8")
            vb = value.encode("utf-8")
            out += _INT16.pack(len(kb)) + kb + _INT32.pack(len(vb)) + vb
        return bytes(out)

    def decode_header(self, data: bytes) -> RemotingCommand:
        reader = _Reader(data)
        code, language, version, opaque, flag = reader.unpack(_FIXED)
        (remark_len,) = reader.unpack(_INT32)
        remark = reader.read(remark_len).decode("utf-8") if remark_len > 0 else ""
        (ext_len,) = reader.unpack(_INT32)
        ext_fields: dict[str, str] = {}
        if ext_len > 0:
            ext_reader = _Reader(reader.read(ext_len))
            while ext_reader.remaining > 0:
                (klen,) = ext_reader.unpack(_INT16)
                key = ext_reader.read(klen).decode("utf-8")
                (vlen,) = ext_reader.unpack(_INT32)
                ext_fields[key] = ext_reader.read(vlen).decode("utf-8")
        return RemotingCommand(
            code=code,
            language=LanguageCode.from_byte(language),
            version=version,
            opaque=opaque,
            flag=flag,
            remark=remark,
            ext_fields=ext_fields,
            body=b"",
        )


_SERIALIZERS = {CodecType.JSON: JsonCodec(), CodecType.ROCKETMQ: RocketMQCodec()}


def encode(command: RemotingCommand, codec_type: CodecType = CodecType.JSON) -> bytes:
    """Encode a command into a complete frame, including the leading frame size."""
    header = _SERIALIZERS[CodecType(codec_type)].encode_header(command)
    body = command.body or b""
    frame_size = 4 + len(header) + len(body)
    return b"".join(
        [_INT32.pack(frame_size), mark_protocol_type(len(header), codec_type), header, body]
    )


def decode(data: bytes) -> RemotingCommand:
    """Decode a frame whose leading frame-size word has already been removed."""
    reader = _Reader(data)
    (raw,) = struct.unpack(">I", reader.read(4))
    header_length = raw & 0xFFFFFF
    header = reader.read(header_length)
    codec = (raw >> 24) & 0xFF
    if codec == CodecType.JSON:
        command = _SERIALIZERS[CodecType.JSON].decode_header(header)
    elif codec == CodecType.ROCKETMQ:
        command = _SERIALIZERS[CodecType.ROCKETMQ].decode_header(header)
    else:
        raise ValueError(f"unknown codec type: {codec}")
    body_length = len(data) - 4 - header_length
    if body_length > 0:
        command.body = reader.read(body_length)
    return command


class RPCHook(abc.ABC):
    """Hook invoked around each remote call."""

    @abc.abstractmethod
    def do_before_request(self, addr: str, command: RemotingCommand) -> None: ...

    @abc.abstractmethod
    def do_after_response(self, addr: str, command: RemotingCommand) -> None: ...