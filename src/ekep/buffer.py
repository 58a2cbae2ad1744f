from typing import Optional


class BufferReadError(ValueError):
    pass


class BufferWriteError(ValueError):
    pass


class Buffer:
    """
    A byte cursor used to pull and push EKEP wire structures.

    Writes past the current end grow the underlying storage, so a single
    output buffer can hold several frames of any size.
    """

    def __init__(self, capacity: int = 0, data: Optional[bytes] = None):
        if data is not None:
            self._data = bytearray(data)
        else:
            self._data = bytearray(capacity)
        self._pos = 0

    @property
    def capacity(self) -> int:
        return len(self._data)

    @property
    def data(self) -> bytes:
        return bytes(self._data[: self._pos])

    def data_slice(self, start: int, end: int) -> bytes:
        if start < 0 or end > len(self._data) or start > end:
            raise BufferReadError("Read out of bounds")
        return bytes(self._data[start:end])

    def eof(self) -> bool:
        return self._pos == len(self._data)

    def seek(self, pos: int) -> None:
        if pos < 0:
            raise BufferReadError("Seek out of bounds")
        self._reserve_to(pos)
        self._pos = pos

    def tell(self) -> int:
        return self._pos

    def pull_bytes(self, length: int) -> bytes:
        """
        Pull bytes.
        """
        if length < 0 or self._pos + length > len(self._data):
            raise BufferReadError("Read out of bounds")
        v = bytes(self._data[self._pos : self._pos + length])
        self._pos += length
        return v

    def pull_uint8(self) -> int:
        return self.pull_bytes(1)[0]

    def pull_uint16(self) -> int:
        return int.from_bytes(self.pull_bytes(2), byteorder="big")

    def pull_uint24(self) -> int:
        return int.from_bytes(self.pull_bytes(3), byteorder="big")

    def pull_uint32(self) -> int:
        return int.from_bytes(self.pull_bytes(4), byteorder="big")

    def push_bytes(self, value: bytes) -> None:
        """
        Push bytes.
        """
        end = self._pos + len(value)
        self._reserve_to(end)
        self._data[self._pos : end] = value
        self._pos = end

    def push_uint8(self, value: int) -> None:
        self._push_int(value, 1)

    def push_uint16(self, value: int) -> None:
        self._push_int(value, 2)

    def push_uint24(self, value: int) -> None:
        self._push_int(value, 3)

    def push_uint32(self, value: int) -> None:
        self._push_int(value, 4)

    def _push_int(self, value: int, size: int) -> None:
        try:
            encoded = int(value).to_bytes(size, byteorder="big")
        except OverflowError:
            raise BufferWriteError(f"Integer {value} does not fit in {size} bytes")
        self.push_bytes(encoded)

    def _reserve_to(self, end: int) -> None:
        if end > len(self._data):
            self._data.extend(bytes(end - len(self._data)))
