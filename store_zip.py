from collections import namedtuple
from struct import Struct
import asyncio
import logging

logger = logging.getLogger(__name__)

# Private methods

def _make_crc_32_table():
    table = []
    for n in range(0, 256):
        c = n
        for _ in range(0, 8):
            c = (0xedb88320 ^ (c >> 1)) if c & 1 else (c >> 1)
        table.append(c)
    return tuple(table)

_local_header_signature = 0x04034b50
_local_header_struct = Struct('<IHHHHHIIIHH')

_central_directory_header_signature = 0x02014b50
_central_directory_header_struct = Struct('<IHHHHHHIIIHHHHHII')

_end_of_central_directory_signature = 0x06054b50
_end_of_central_directory_struct = Struct('<IHHHHIIH')

_utf8_flag = 0b0000100000000000

def _raise_if_beyond(value, maximum, exception_class):
    if value > maximum:
        raise exception_class()

def _raise_if_not_at(position, expected):
    if position != expected:
        raise LayoutIntegrityError(f'Cursor at {position}, expected {expected}')

def _flags(_entry):
    # Names are always UTF-8 encoded, but only flagged as such when it makes a difference to readers
    return 0 if _entry.name.isascii() else _utf8_flag

def _as_name(name):
    if not isinstance(name, str):
        raise TypeError(f'Name must be str, not {type(name).__name__}')
    try:
        name.encode('utf-8')
    except UnicodeEncodeError as e:
        raise NameEncodingError(name) from e
    return name

def _as_payload(payload):
    # memoryview rejects ints and str that bytes() would otherwise accept
    return payload if isinstance(payload, bytes) else bytes(memoryview(payload))

# Public methods

CRC_32_TABLE = _make_crc_32_table()

Entry = namedtuple('Entry', ('name', 'name_encoded', 'payload', 'size', 'crc_32'))
PlannedEntry = namedtuple('PlannedEntry', ('entry', 'offset', 'local_record_size'))
Layout = namedtuple('Layout', ('entries', 'central_directory_start', 'central_directory_size', 'total_size'))
BatchResult = namedtuple('BatchResult', ('name', 'success', 'replaced', 'error'))


def crc_32(data, value=0):
    crc = value ^ 0xffffffff
    for byte in memoryview(data).cast('B'):
        crc = CRC_32_TABLE[(crc ^ byte) & 0xff] ^ (crc >> 8)
    return crc ^ 0xffffffff


def entry(name, payload, get_crc_32=crc_32):
    name = _as_name(name)
    payload = _as_payload(payload)
    return Entry(name, name.encode('utf-8'), payload, len(payload), get_crc_32(payload) & 0xffffffff)


def plan_layout(entries):
    entries = tuple(entries)
    _raise_if_beyond(len(entries), maximum=0xffff, exception_class=CentralDirectoryNumberOfEntriesOverflowError)

    planned_entries = []
    offset = 0
    central_directory_size = 0

    for _entry in entries:
        _raise_if_beyond(len(_entry.name_encoded), maximum=0xffff, exception_class=NameLengthOverflowError)
        _raise_if_beyond(_entry.size, maximum=0xffffffff, exception_class=UncompressedSizeOverflowError)
        _raise_if_beyond(offset, maximum=0xffffffff, exception_class=OffsetOverflowError)

        local_record_size = _local_header_struct.size + len(_entry.name_encoded) + _entry.size
        planned_entries.append(PlannedEntry(_entry, offset, local_record_size))
        offset += local_record_size
        central_directory_size += _central_directory_header_struct.size + len(_entry.name_encoded)

    central_directory_start = offset
    total_size = central_directory_start + central_directory_size + _end_of_central_directory_struct.size

    _raise_if_beyond(central_directory_start, maximum=0xffffffff, exception_class=OffsetOverflowError)
    _raise_if_beyond(central_directory_size, maximum=0xffffffff, exception_class=CentralDirectorySizeOverflowError)
    _raise_if_beyond(total_size, maximum=0xffffffff, exception_class=ArchiveSizeOverflowError)

    return Layout(tuple(planned_entries), central_directory_start, central_directory_size, total_size)


def write_local_file_record(buffer, position, planned):
    _entry = planned.entry
    _raise_if_not_at(position, planned.offset)

    _local_header_struct.pack_into(
        buffer, position,
        _local_header_signature,
        20,            # Version
        _flags(_entry),
        0,             # Compression method - stored
        0,             # Modification time
        0,             # Modification date
        _entry.crc_32,
        _entry.size,   # Compressed size - same as uncompressed since stored
        _entry.size,
        len(_entry.name_encoded),
        0,             # Extra field length
    )
    position += _local_header_struct.size

    buffer[position:position + len(_entry.name_encoded)] = _entry.name_encoded
    position += len(_entry.name_encoded)

    buffer[position:position + _entry.size] = _entry.payload
    position += len(_entry.payload)

    _raise_if_not_at(position, planned.offset + planned.local_record_size)
    return position


def write_central_directory_record(buffer, position, planned):
    _entry = planned.entry

    _central_directory_header_struct.pack_into(
        buffer, position,
        _central_directory_header_signature,
        20,            # Version made by
        20,            # Version required
        _flags(_entry),
        0,             # Compression method - stored
        0,             # Modification time
        0,             # Modification date
        _entry.crc_32,
        _entry.size,   # Compressed size - same as uncompressed since stored
        _entry.size,
        len(_entry.name_encoded),
        0,             # Extra field length
        0,             # File comment length
        0,             # Disk number
        0,             # Internal file attributes
        0,             # External file attributes
        planned.offset,
    )
    position += _central_directory_header_struct.size

    buffer[position:position + len(_entry.name_encoded)] = _entry.name_encoded
    return position + len(_entry.name_encoded)


def write_end_of_central_directory(buffer, position, layout):
    _end_of_central_directory_struct.pack_into(
        buffer, position,
        _end_of_central_directory_signature,
        0,                      # Disk number
        0,                      # Disk number with central directory
        len(layout.entries),    # On this disk
        len(layout.entries),    # In total
        layout.central_directory_size,
        layout.central_directory_start,
        0,                      # File comment length
    )
    return position + _end_of_central_directory_struct.size


def store_zip(files, get_crc_32=crc_32):
    layout = plan_layout(entry(name, payload, get_crc_32=get_crc_32) for name, payload in files)
    buffer = bytearray(layout.total_size)
    position = 0

    for planned in layout.entries:
        position = write_local_file_record(buffer, position, planned)

    _raise_if_not_at(position, layout.central_directory_start)

    for planned in layout.entries:
        position = write_central_directory_record(buffer, position, planned)

    _raise_if_not_at(position, layout.central_directory_start + layout.central_directory_size)
    position = write_end_of_central_directory(buffer, position, layout)
    _raise_if_not_at(position, layout.total_size)
    _raise_if_not_at(len(buffer), layout.total_size)

    logger.debug('Built archive of %s entries, %s bytes', len(layout.entries), layout.total_size)
    return bytes(buffer)


class ZipEntries:
    """Named payloads, in the order each name was first added"""

    def __init__(self, get_crc_32=crc_32):
        self._get_crc_32 = get_crc_32
        self._payloads = {}

    def __len__(self):
        return len(self._payloads)

    def __contains__(self, name):
        return name in self._payloads

    def add(self, name, payload):
        name = _as_name(name)
        payload = _as_payload(payload)
        replaced = name in self._payloads
        self._payloads[name] = payload
        return replaced

    def remove(self, name):
        del self._payloads[name]

    def clear(self):
        self._payloads.clear()

    def list(self):
        return list(self._payloads)

    def build(self):
        return store_zip(tuple(self._payloads.items()), get_crc_32=self._get_crc_32)

    def add_batch(self, requests):
        results = []
        for name, get_payload in requests:
            try:
                payload = get_payload()
            except Exception as e:
                results.append(self._unavailable(name, e))
            else:
                results.append(self._add_resolved(name, payload))
        return results

    async def async_add_batch(self, requests):
        requests = tuple(requests)

        async def resolve(get_payload):
            return await get_payload()

        payloads = await asyncio.gather(*(
            resolve(get_payload) for _, get_payload in requests
        ), return_exceptions=True)

        results = []
        for (name, _), payload in zip(requests, payloads):
            if isinstance(payload, BaseException) and not isinstance(payload, Exception):
                raise payload
            results.append(
                self._unavailable(name, payload) if isinstance(payload, Exception) else
                self._add_resolved(name, payload)
            )
        return results

    def _add_resolved(self, name, payload):
        try:
            replaced = self.add(name, payload)
        except (TypeError, NameEncodingError) as e:
            return self._unavailable(name, e)
        return BatchResult(name, True, replaced, None)

    @staticmethod
    def _unavailable(name, exception):
        logger.warning('Payload for %r unavailable: %s', name, exception)
        error = PayloadUnavailableError(name)
        error.__cause__ = exception
        return BatchResult(name, False, False, error)


class ZipError(Exception):
    pass


class ZipValueError(ZipError, ValueError):
    pass


class ZipIntegrityError(ZipValueError):
    pass


class LayoutIntegrityError(ZipIntegrityError):
    pass


class ZipOverflowError(ZipValueError, OverflowError):
    pass


class UncompressedSizeOverflowError(ZipOverflowError):
    pass


class CentralDirectorySizeOverflowError(ZipOverflowError):
    pass


class OffsetOverflowError(ZipOverflowError):
    pass


class CentralDirectoryNumberOfEntriesOverflowError(ZipOverflowError):
    pass


class NameEncodingError(ZipValueError):
    pass


class NameLengthOverflowError(ZipOverflowError):
    pass


class ArchiveSizeOverflowError(ZipOverflowError):
    pass


class PayloadUnavailableError(ZipError):
    pass
