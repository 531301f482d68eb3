#!/usr/bin/env python3
"""
bfbin.py - Streaming decoder for Byfl binary-output files

Reads the self-describing tabular format written by Byfl-instrumented
programs and drives caller-supplied callbacks table by table, column by
column and row by row. Nothing is materialized beyond the current value.

Binary Format (all multi-byte integers unsigned big-endian):
    File        := "BYFLBIN" Table* TableKind(NONE)
    Table       := TableKind TableName Body
    TableName   := u16 length + bytes

    Basic table body:
        ColumnType ColumnName ... ColumnType(NONE)
        RowMarker(DATA) Value{ncols} ... RowMarker(NONE)

    Key:value table body:
        ColumnType KeyName Value ... ColumnType(NONE)

    Value:  UINT64 = 8 bytes, STRING = u16 length + bytes, BOOL = 1 byte

Every tag (table kind, column type, row marker) is a single byte.

Usage:
    from bfbin import BfbinCallbacks, process_byfl_file

    def on_row(user_data, value):
        user_data.append(value)

    values = []
    callbacks = BfbinCallbacks(data_uint64_cb=on_row,
                               error_cb=lambda ud, msg: print(msg))
    process_byfl_file('program.byfl', callbacks, user_data=values)
"""

import dataclasses
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, BinaryIO, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Magic header every Byfl binary-output file starts with
MAGIC = b'BYFLBIN'

# Buffer this many bytes of input to amortize the many small reads
READ_BUFFER_SIZE = 10 * 1024 * 1024

# Strings carry a 16-bit length prefix
MAX_STRING_LENGTH = 0xFFFF

# Widths accepted by the big-endian integer primitive
VALID_WIDTHS = (1, 2, 4, 8)

TAG_WIDTH = 1
UINT64_WIDTH = 8
BOOL_WIDTH = 1
STRING_LENGTH_WIDTH = 2


class TableKind(IntEnum):
    """Top-level table tags."""
    NONE = 0
    BASIC = 1
    KEYVAL = 2


class ColumnType(IntEnum):
    """Column and key:value entry tags."""
    NONE = 0
    UINT64 = 1
    STRING = 2
    BOOL = 3


class RowMarker(IntEnum):
    """Per-row tags in a basic table."""
    NONE = 0
    DATA = 1


# =============================================================================
# Errors
# =============================================================================

class BfbinError(Exception):
    """Base exception for every decoding failure."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class BfbinIOError(BfbinError):
    """Raised when the input file cannot be opened or read."""


class FormatError(BfbinError):
    """Raised when the input is not a Byfl binary-output file."""


class TruncatedError(BfbinError):
    """Raised when the input ends in the middle of a record."""


class AllocationError(BfbinError):
    """Raised when the scratch buffer cannot grow."""


class AbiMismatchError(BfbinError):
    """Raised when the caller's callback set does not match this library."""


class InternalError(BfbinError):
    """Raised when the decoder reaches a state the grammar disallows."""


class StopDecoding(Exception):
    """Raised by a callback to end decoding early without an error."""


# =============================================================================
# Callback set
# =============================================================================

@dataclass
class BfbinCallbacks:
    """Optional per-event handlers. Each receives the user data first.

    Unset (None) handlers are skipped. String arguments are fresh str
    objects; integers are plain ints and booleans plain bools.
    """
    error_cb: Optional[Callable[[Any, str], None]] = None
    table_begin_cb: Optional[Callable[[Any, TableKind, str], None]] = None
    table_basic_cb: Optional[Callable[[Any, str], None]] = None
    table_keyval_cb: Optional[Callable[[Any, str], None]] = None
    table_end_cb: Optional[Callable[[Any], None]] = None
    column_begin_cb: Optional[Callable[[Any], None]] = None
    column_uint64_cb: Optional[Callable[[Any, str], None]] = None
    column_string_cb: Optional[Callable[[Any, str], None]] = None
    column_bool_cb: Optional[Callable[[Any, str], None]] = None
    column_end_cb: Optional[Callable[[Any], None]] = None
    row_begin_cb: Optional[Callable[[Any], None]] = None
    data_uint64_cb: Optional[Callable[[Any, int], None]] = None
    data_string_cb: Optional[Callable[[Any, str], None]] = None
    data_bool_cb: Optional[Callable[[Any, bool], None]] = None
    row_end_cb: Optional[Callable[[Any], None]] = None


# Size callers must declare; a mismatch means they were written against
# a different callback set than this library provides.
CALLBACK_SET_SIZE = len(dataclasses.fields(BfbinCallbacks))


# Column type -> (column callback, data callback) attribute names
COLUMN_CALLBACKS = {
    ColumnType.UINT64: ('column_uint64_cb', 'data_uint64_cb'),
    ColumnType.STRING: ('column_string_cb', 'data_string_cb'),
    ColumnType.BOOL: ('column_bool_cb', 'data_bool_cb'),
}


# =============================================================================
# Binary reader
# =============================================================================

class ScratchBuffer:
    """Growable byte buffer reused for every variable-length read.

    Capacity doubles on demand and never shrinks. Contents are not
    preserved across growth.
    """

    def __init__(self, initial_size: int = UINT64_WIDTH):
        self._data = bytearray(initial_size)

    @property
    def capacity(self) -> int:
        return len(self._data)

    def reserve(self, size: int) -> None:
        """Ensure at least `size` bytes of capacity."""
        if size <= len(self._data):
            return
        new_size = max(len(self._data) * 2, size, 1)
        try:
            self._data = bytearray(new_size)
        except MemoryError:
            raise AllocationError(f"Failed to allocate {new_size} bytes of memory",
                                  {'size': new_size})

    def view(self, size: int) -> memoryview:
        """Writable view of the first `size` bytes (grows first if needed)."""
        self.reserve(size)
        return memoryview(self._data)[:size]

    def release(self) -> None:
        self._data = bytearray()


class BinaryReader:
    """Buffered big-endian reader over a Byfl binary-output file."""

    def __init__(self, fd: BinaryIO, filename: str, scratch: ScratchBuffer):
        self.fd = fd
        self.filename = filename
        self.scratch = scratch

    @classmethod
    def open(cls, filename: str, scratch: ScratchBuffer) -> 'BinaryReader':
        """Open `filename` and validate its magic header."""
        try:
            fd = open(filename, 'rb', buffering=READ_BUFFER_SIZE)
        except OSError as e:
            raise BfbinIOError(f"Failed to open {filename} ({e.strerror or e})",
                               {'filename': filename, 'cause': str(e)})

        reader = cls(fd, filename, scratch)
        try:
            reader._check_magic()
        except BfbinError:
            reader.close()
            raise
        logger.debug("Opened %s", filename)
        return reader

    def _check_magic(self) -> None:
        header = self._read(len(MAGIC))
        if len(header) != len(MAGIC):
            raise FormatError(
                f"File {self.filename} is too short to be a Byfl binary-output "
                f"file (got {len(header)} of {len(MAGIC)} header bytes)",
                {'filename': self.filename, 'header': header.hex()})
        if header != MAGIC:
            raise FormatError(
                f"File {self.filename} does not appear to be a Byfl "
                f"binary-output file",
                {'filename': self.filename, 'header': header.hex()})

    def _read(self, size: int) -> bytes:
        try:
            return self.fd.read(size)
        except OSError as e:
            raise BfbinIOError(f"Failed to read from {self.filename} ({e.strerror or e})",
                               {'filename': self.filename, 'cause': str(e)})

    @property
    def position(self) -> int:
        return self.fd.tell()

    def read_unsigned(self, width: int) -> int:
        """Read a `width`-byte unsigned big-endian integer."""
        if width not in VALID_WIDTHS:
            raise InternalError(f"Unsupported integer width {width}",
                                {'width': width})
        data = self._read(width)
        if len(data) != width:
            position = self.position
            raise TruncatedError(
                f"Failed to read a {width}-byte integer from {self.filename} "
                f"at position {position}",
                {'filename': self.filename, 'position': position})
        return int.from_bytes(data, 'big')

    def read_bool(self) -> bool:
        return self.read_unsigned(BOOL_WIDTH) != 0

    def read_string(self) -> str:
        """Read a length-prefixed string through the scratch buffer."""
        length = self.read_unsigned(STRING_LENGTH_WIDTH)
        buf = self.scratch.view(length)
        try:
            try:
                got = self.fd.readinto(buf)
            except OSError as e:
                raise BfbinIOError(f"Failed to read from {self.filename} ({e.strerror or e})",
                                   {'filename': self.filename, 'cause': str(e)})
            if got != length:
                raise TruncatedError(
                    f"Failed to read a {length}-byte string from {self.filename} "
                    f"(got {got} bytes)",
                    {'filename': self.filename, 'position': self.position})
            return bytes(buf).decode('utf-8', errors='surrogateescape')
        finally:
            buf.release()

    def close(self) -> None:
        if self.fd is not None:
            self.fd.close()
            self.fd = None


# =============================================================================
# Session
# =============================================================================

class BfbinSession:
    """State for one decode pass over one file. Not reentrant."""

    def __init__(self, filename: str, callbacks: BfbinCallbacks,
                 user_data: Any = None):
        self.filename = filename
        self.callbacks = callbacks
        self.user_data = user_data
        self.scratch = ScratchBuffer()
        self.reader: Optional[BinaryReader] = None
        self.error: Optional[BfbinError] = None
        self.tables_decoded = 0

    def _invoke(self, name: str, *args) -> None:
        func = getattr(self.callbacks, name)
        if func is not None:
            func(self.user_data, *args)

    def _read_tag(self, tag_type):
        """Read a one-byte tag; unknown values are a grammar violation."""
        position = self.reader.position
        value = self.reader.read_unsigned(TAG_WIDTH)
        try:
            return tag_type(value)
        except ValueError:
            raise InternalError(
                f"Unexpected {tag_type.__name__} tag {value} in {self.filename} "
                f"at position {position}",
                {'filename': self.filename, 'position': position, 'tag': value})

    def _read_value(self, coltype: ColumnType):
        if coltype == ColumnType.UINT64:
            return self.reader.read_unsigned(UINT64_WIDTH)
        if coltype == ColumnType.STRING:
            return self.reader.read_string()
        if coltype == ColumnType.BOOL:
            return self.reader.read_bool()
        raise InternalError(f"No value encoding for column type {coltype!r}")

    def open(self) -> None:
        self.reader = BinaryReader.open(self.filename, self.scratch)

    def close(self) -> None:
        if self.reader is not None:
            self.reader.close()
            self.reader = None
        self.scratch.release()

    def decode_next_table(self) -> bool:
        """Decode one table. Return False at the end-of-file marker."""
        kind = self._read_tag(TableKind)
        if kind == TableKind.NONE:
            return False
        name = self.reader.read_string()

        self._invoke('table_begin_cb', kind, name)
        if kind == TableKind.BASIC:
            self._invoke('table_basic_cb', name)
            nrows = self.decode_basic_table()
            logger.debug("Decoded basic table %r (%d rows)", name, nrows)
        else:
            self._invoke('table_keyval_cb', name)
            nentries = self.decode_keyval_table()
            logger.debug("Decoded key:value table %r (%d entries)", name, nentries)
        self._invoke('table_end_cb')
        self.tables_decoded += 1
        return True

    def decode_basic_table(self) -> int:
        """Decode a column header followed by rows. Returns the row count."""
        columns: List[ColumnType] = []

        self._invoke('column_begin_cb')
        while True:
            coltype = self._read_tag(ColumnType)
            if coltype == ColumnType.NONE:
                self._invoke('column_end_cb')
                break
            name = self.reader.read_string()
            columns.append(coltype)
            self._invoke(COLUMN_CALLBACKS[coltype][0], name)

        nrows = 0
        while True:
            marker = self._read_tag(RowMarker)
            if marker == RowMarker.NONE:
                break
            self._invoke('row_begin_cb')
            for coltype in columns:
                self._invoke(COLUMN_CALLBACKS[coltype][1], self._read_value(coltype))
            self._invoke('row_end_cb')
            nrows += 1
        return nrows

    def decode_keyval_table(self) -> int:
        """Decode typed name/value pairs. Returns the entry count."""
        nentries = 0
        while True:
            coltype = self._read_tag(ColumnType)
            if coltype == ColumnType.NONE:
                break
            column_cb, data_cb = COLUMN_CALLBACKS[coltype]
            self._invoke(column_cb, self.reader.read_string())
            self._invoke(data_cb, self._read_value(coltype))
            nentries += 1
        return nentries

    def run(self) -> None:
        """Decode the whole file, reporting any failure exactly once."""
        try:
            self.open()
            while self.decode_next_table():
                pass
        except StopDecoding:
            logger.debug("Decoding of %s stopped by callback after %d tables",
                         self.filename, self.tables_decoded)
        except BfbinError as e:
            self.error = e
            logger.warning("Failed to decode %s: %s", self.filename, e)
            self._invoke('error_cb', str(e))
        finally:
            self.close()


def process_byfl_file(filename: str, callbacks: BfbinCallbacks,
                      callbacks_size: int = CALLBACK_SET_SIZE,
                      user_data: Any = None) -> None:
    """Decode an entire Byfl binary-output file. Sole library entry point.

    Args:
        filename: Path of the file to decode
        callbacks: Handlers to invoke; unset handlers are skipped
        callbacks_size: Size of the callback set the caller was written
            against; must equal CALLBACK_SET_SIZE
        user_data: Opaque value passed as the first argument to every handler

    All failures are reported through callbacks.error_cb (at most once) and
    never raised. Exceptions raised by handlers other than StopDecoding
    propagate after the file is closed.
    """
    if callbacks_size != CALLBACK_SET_SIZE:
        error = AbiMismatchError(
            "Mismatched bfbin header and library file",
            {'expected': CALLBACK_SET_SIZE, 'actual': callbacks_size})
        logger.warning("%s (expected %d callbacks, got %d)",
                       error, CALLBACK_SET_SIZE, callbacks_size)
        if callbacks.error_cb is not None:
            callbacks.error_cb(user_data, str(error))
        return

    BfbinSession(filename, callbacks, user_data).run()
