#!/usr/bin/env python3
"""
QR Frame Restore - Rebuild a file that was transmitted as a sequence of QR code images

Each image carries one QR code. Each QR code carries one base64-encoded frame of a
small tagged protocol:

    [Tag:1][Body][Digest:hash_length]

    'M' - transfer metadata fragment (JSON text, may span several frames)
    'D' - content segment: [SegmentId:id_width, big-endian][Payload]
    'H' - whole-file MD5 checksum (16 bytes)

The digest is BLAKE2b over tag + body with digest_size = hash_length. Until the
metadata has been read, the digest length is found by trying every length.

REQUIREMENTS:
  Python 3.8+

  System dependencies (for pyzbar):
    - Linux: sudo apt-get install libzbar0
    - macOS: brew install zbar
    - Windows: Download from http://zbar.sourceforge.net/

USAGE:
  Rebuild a file from a directory of captured frames:
    python qr_frame_restore.py decode frames/ -o recovered.bin

  Show the transfer metadata found in a frame directory:
    python qr_frame_restore.py info frames/
"""

import sys
import os
import json
import hashlib
import base64
import binascii
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple, Iterable, Iterator, Union, Set

import click
from PIL import Image
import cv2
import numpy as np

# Version and format constants
VERSION = "1.0.0"

FRAME_TAG_METADATA = b'M'
FRAME_TAG_DATA = b'D'
FRAME_TAG_CHECKSUM = b'H'
FRAME_TAGS = (FRAME_TAG_METADATA, FRAME_TAG_DATA, FRAME_TAG_CHECKSUM)

# Segment id widths in bytes
ID_WIDTHS = (1, 2, 4, 8)

# Id type names used by older senders
ID_TYPE_WIDTHS = {
    'u8': 1,
    'u16': 2,
    'u32': 4,
    'u64': 8,
}

# BLAKE2b supports digest sizes of 1..64 bytes
MAX_HASH_LENGTH = 64

CHECKSUM_SIZE = 16  # MD5

IMAGE_EXTENSIONS = ('.png', '.jpg', '.jpeg', '.bmp', '.gif', '.tif', '.tiff', '.webp')

STATUS_OK = 'ok'
STATUS_NO_TRANSMISSION = 'no_transmission'
STATUS_MISSING_SEGMENTS = 'missing_segments'
STATUS_CHECKSUM_MISMATCH = 'checksum_mismatch'


class ProtocolError(ValueError):
    """Transfer metadata is complete but cannot be used to decode the run."""


# ============================================================================
# FRAME TYPES
# ============================================================================

@dataclass(frozen=True)
class TransferMetadata:
    """Describes the whole transmission."""
    segment_count: int
    id_width: int
    hash_length: int


@dataclass
class MetadataFragment:
    body: bytes
    digest: bytes


@dataclass
class ContentSegment:
    id: int
    payload: bytes
    digest: bytes


@dataclass
class ChecksumSegment:
    payload: bytes
    digest: bytes

    @property
    def hexdigest(self) -> str:
        return self.payload.hex()


Frame = Union[MetadataFragment, ContentSegment, ChecksumSegment]


@dataclass
class DecoderState:
    """Everything the decoding loop accumulates during one run."""
    metadata_buffer: bytes = b''
    metadata: Optional[TransferMetadata] = None
    segments: Dict[int, ContentSegment] = field(default_factory=dict)
    checksum: Optional[ChecksumSegment] = None
    conflicting_ids: Set[int] = field(default_factory=set)
    frames_seen: int = 0
    frames_rejected: int = 0


# ============================================================================
# INTEGRITY FUNCTIONS
# ============================================================================

def compute_digest(data: bytes, length: int) -> bytes:
    """Compute the variable-length BLAKE2b digest used to seal each frame.

    Args:
        data: Bytes to hash (tag + body)
        length: Digest size in bytes (1..64)

    Returns:
        Digest bytes of the requested length
    """
    return hashlib.blake2b(data, digest_size=length).digest()


def calculate_checksum(data: bytes) -> str:
    """Calculate the whole-file MD5 checksum as a lowercase hex string."""
    return hashlib.md5(data).hexdigest()


def verify_frame(frame: bytes, hash_length: int) -> bool:
    """Check a frame's trailing digest against its tag and body.

    Args:
        frame: Raw frame bytes as recovered from one QR code
        hash_length: Number of trailing digest bytes

    Returns:
        True if the digest matches, False otherwise
    """
    if not 1 <= hash_length <= MAX_HASH_LENGTH or len(frame) <= hash_length:
        return False
    split = len(frame) - hash_length
    return compute_digest(frame[:split], hash_length) == frame[split:]


def guess_hash_length(frame: bytes) -> Optional[int]:
    """Find the digest length of a frame when no metadata is known yet.

    Every length from 1 upwards is tried; the first one whose trailing bytes
    match the digest of the remaining prefix wins.

    Args:
        frame: Raw frame bytes

    Returns:
        The digest length, or None if no length matches
    """
    for length in range(1, min(len(frame) - 1, MAX_HASH_LENGTH) + 1):
        if verify_frame(frame, length):
            return length
    return None


# ============================================================================
# FRAME PARSING
# ============================================================================

def _metadata_int(record: Dict[str, Any], names: Tuple[str, ...]) -> int:
    for name in names:
        if name in record:
            value = record[name]
            # bool is an int subclass, reject it explicitly
            if isinstance(value, bool) or not isinstance(value, int):
                raise ProtocolError(f"Metadata field '{name}' must be an integer, got {value!r}")
            return value
    raise ProtocolError(f"Metadata is missing required field '{names[0]}'")


def parse_metadata(data: Union[bytes, str]) -> TransferMetadata:
    """Parse the accumulated metadata bytes into TransferMetadata.

    Accepts both the current field names (segment_count, id_width, hash_length)
    and the ones used by older senders (qrcode_count, id_type, hash_len).

    Args:
        data: Complete UTF-8 JSON gathered from metadata frames

    Returns:
        Parsed TransferMetadata

    Raises:
        ProtocolError: If the data is not a valid metadata record
    """
    if isinstance(data, bytes):
        try:
            data = data.decode('utf-8')
        except UnicodeDecodeError as e:
            raise ProtocolError(f"Transfer metadata is not valid UTF-8: {e}")

    try:
        record = json.loads(data)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Transfer metadata is not valid JSON: {e}")

    if not isinstance(record, dict):
        raise ProtocolError("Transfer metadata must be a JSON object")

    segment_count = _metadata_int(record, ('segment_count', 'qrcode_count'))
    if segment_count < 0:
        raise ProtocolError(f"Invalid segment count: {segment_count}")

    if 'id_width' not in record and 'id_type' in record:
        id_type = record['id_type']
        if id_type not in ID_TYPE_WIDTHS:
            raise ProtocolError(f"Unsupported id type: {id_type!r}")
        id_width = ID_TYPE_WIDTHS[id_type]
    else:
        id_width = _metadata_int(record, ('id_width',))
    if id_width not in ID_WIDTHS:
        raise ProtocolError(f"Unsupported id width: {id_width} (expected one of {list(ID_WIDTHS)})")

    hash_length = _metadata_int(record, ('hash_length', 'hash_len'))
    if not 1 <= hash_length <= MAX_HASH_LENGTH:
        raise ProtocolError(f"Unsupported hash length: {hash_length} (expected 1..{MAX_HASH_LENGTH})")

    return TransferMetadata(segment_count=segment_count, id_width=id_width, hash_length=hash_length)


def _parse_checksum_body(body: bytes) -> Optional[bytes]:
    if len(body) == CHECKSUM_SIZE:
        return body
    if len(body) == CHECKSUM_SIZE * 2:
        try:
            return bytes.fromhex(body.decode('ascii'))
        except (UnicodeDecodeError, ValueError):
            return None
    return None


def parse_frame(frame: bytes, metadata: Optional[TransferMetadata] = None) -> Optional[Frame]:
    """Verify a raw frame and decode it into its typed variant.

    Without metadata the digest length is guessed, and content segments cannot
    be interpreted.

    Args:
        frame: Raw frame bytes
        metadata: Transfer metadata, if already known

    Returns:
        MetadataFragment, ContentSegment or ChecksumSegment, or None if the
        frame has an unknown tag, fails verification, or has an unusable body
    """
    tag = frame[:1]
    if tag not in FRAME_TAGS:
        return None

    if metadata is None:
        if tag == FRAME_TAG_DATA:
            return None
        hash_length = guess_hash_length(frame)
        if hash_length is None:
            return None
    else:
        hash_length = metadata.hash_length
        if not verify_frame(frame, hash_length):
            return None

    body = frame[1:len(frame) - hash_length]
    digest = frame[len(frame) - hash_length:]

    if tag == FRAME_TAG_METADATA:
        # Fragments may split a multibyte character, decode only once joined
        return MetadataFragment(body=body, digest=digest)

    if tag == FRAME_TAG_DATA:
        id_width = metadata.id_width
        if len(body) < id_width:
            return None
        segment_id = int.from_bytes(body[:id_width], byteorder='big')
        if segment_id >= metadata.segment_count:
            return None
        return ContentSegment(id=segment_id, payload=body[id_width:], digest=digest)

    checksum = _parse_checksum_body(body)
    if checksum is None:
        return None
    return ChecksumSegment(payload=checksum, digest=digest)


# ============================================================================
# DECODER STATE MACHINE
# ============================================================================

class FrameCursor:
    """Forward iterator over decoded payloads with a single-step rewind.

    The last payload handed out is kept so that unread() can replay it.
    unread() may be used once per run.
    """

    def __init__(self, payloads: Iterable[bytes]):
        self._payloads = iter(payloads)
        self._last: Optional[bytes] = None
        self._replay = False
        self._rewound = False
        self.consumed = 0

    def __iter__(self) -> 'FrameCursor':
        return self

    def __next__(self) -> bytes:
        if self._replay:
            self._replay = False
            return self._last
        self._last = next(self._payloads)
        self.consumed += 1
        return self._last

    def unread(self) -> None:
        """Step back by one so the last payload is returned again."""
        if self._rewound:
            raise RuntimeError("Frame cursor can only be rewound once per run")
        if self._last is None:
            raise RuntimeError("Nothing to unread")
        self._replay = True
        self._rewound = True


def acquire_metadata(state: DecoderState, cursor: FrameCursor, verbose: bool = False) -> bool:
    """Collect metadata fragments until they form a complete record.

    Returns:
        True once state.metadata is set, False if the frames ran out first

    Raises:
        ProtocolError: If the completed metadata cannot be used
    """
    for payload in cursor:
        # Content segments cannot be read without metadata
        if payload[:1] == FRAME_TAG_DATA:
            continue
        frame = parse_frame(payload)
        if frame is None:
            state.frames_rejected += 1
            continue
        if not isinstance(frame, MetadataFragment):
            continue

        state.metadata_buffer += frame.body
        if verbose:
            click.echo(f"Metadata fragment: {len(frame.body)} bytes")
        if not state.metadata_buffer.rstrip().endswith(b'}'):
            continue

        state.metadata = parse_metadata(state.metadata_buffer)
        state.metadata_buffer = b''
        if verbose:
            md = state.metadata
            click.echo(f"Metadata: {md.segment_count} segments, "
                       f"id width {md.id_width}, hash length {md.hash_length}")
        return True
    return False


def _store_segment(state: DecoderState, segment: ContentSegment, verbose: bool) -> None:
    previous = state.segments.get(segment.id)
    if previous is not None and previous.payload != segment.payload:
        state.conflicting_ids.add(segment.id)
        click.echo(f"Warning: segment {segment.id} received twice with different content, "
                   f"keeping the latest", err=True)
    # Last seen wins
    state.segments[segment.id] = segment
    if verbose:
        click.echo(f"Got segment: {segment.id}")


def acquire_data(state: DecoderState, cursor: FrameCursor, verbose: bool = False) -> bool:
    """Collect content segments until the first checksum frame.

    The checksum frame is pushed back onto the cursor so acquire_checksum()
    sees it first.

    Returns:
        True if a checksum frame ended the phase, False if the frames ran out
    """
    if state.metadata is None:
        raise ValueError("Cannot read content segments before transfer metadata")

    for payload in cursor:
        frame = parse_frame(payload, state.metadata)
        if frame is None:
            state.frames_rejected += 1
            continue
        if isinstance(frame, ChecksumSegment):
            cursor.unread()
            if verbose:
                click.echo(f"End of data: {len(state.segments)} segment(s) collected")
            return True
        if isinstance(frame, ContentSegment):
            _store_segment(state, frame, verbose)
    return False


def acquire_checksum(state: DecoderState, cursor: FrameCursor, verbose: bool = False) -> bool:
    """Take the first verified checksum frame.

    Returns:
        True if state.checksum is set, False if the frames ran out first
    """
    if state.metadata is None:
        raise ValueError("Cannot read the checksum before transfer metadata")

    for payload in cursor:
        frame = parse_frame(payload, state.metadata)
        if frame is None:
            state.frames_rejected += 1
            continue
        if isinstance(frame, ChecksumSegment):
            state.checksum = frame
            if verbose:
                click.echo(f"Got checksum: {frame.hexdigest}")
            return True
    return False


def run_decoder(payloads: Iterable[bytes], verbose: bool = False) -> DecoderState:
    """Run the metadata, data and checksum phases over a payload sequence.

    Args:
        payloads: Decoded QR payloads in capture order
        verbose: Echo per-frame progress

    Returns:
        The final DecoderState, ready for reassemble()

    Raises:
        ProtocolError: If the transfer metadata is malformed
    """
    state = DecoderState()
    cursor = FrameCursor(payloads)

    if acquire_metadata(state, cursor, verbose):
        if acquire_data(state, cursor, verbose):
            acquire_checksum(state, cursor, verbose)

    state.frames_seen = cursor.consumed
    return state


# ============================================================================
# REASSEMBLY
# ============================================================================

def reassemble(state: DecoderState) -> Tuple[Optional[bytes], Dict[str, Any]]:
    """Join collected segments in id order and verify the whole-file checksum.

    Args:
        state: Final state from run_decoder()

    Returns:
        Tuple of (file_data, report_dict). file_data is None unless every
        segment is present and the checksum matches.
    """
    report = {
        'status': None,
        'reason': '',
        'segment_count': None,
        'found_segments': len(state.segments),
        'missing_segments': [],
        'conflicting_segments': sorted(state.conflicting_ids),
        'expected_checksum': state.checksum.hexdigest if state.checksum else None,
        'actual_checksum': None,
        'frames_seen': state.frames_seen,
        'frames_rejected': state.frames_rejected,
    }

    metadata = state.metadata
    if metadata is None:
        report['status'] = STATUS_NO_TRANSMISSION
        report['reason'] = "No transmission detected: transfer metadata was never received"
        return None, report

    report['segment_count'] = metadata.segment_count

    if len(state.segments) != metadata.segment_count:
        missing = sorted(set(range(metadata.segment_count)) - set(state.segments))
        report['status'] = STATUS_MISSING_SEGMENTS
        report['missing_segments'] = missing
        report['reason'] = f"Missing {len(missing)} segment(s): {missing}"
        return None, report

    file_data = b''.join(state.segments[i].payload for i in range(metadata.segment_count))
    actual = calculate_checksum(file_data)
    report['actual_checksum'] = actual

    expected = report['expected_checksum']
    if expected is None or expected.lower() != actual.lower():
        report['status'] = STATUS_CHECKSUM_MISMATCH
        report['reason'] = (
            f"MD5 verification failed! "
            f"Expected: {expected if expected else 'no checksum received'}, "
            f"Got: {actual}"
        )
        return None, report

    report['status'] = STATUS_OK
    report['reason'] = "MD5 verified"
    return file_data, report


# ============================================================================
# FRAME SOURCE AND OPTICAL DECODING
# ============================================================================

def _normalize_extensions(extensions: Iterable[str]) -> Tuple[str, ...]:
    normalized = []
    for ext in extensions:
        ext = ext.lower()
        if not ext.startswith('.'):
            ext = '.' + ext
        normalized.append(ext)
    return tuple(normalized)


def list_frame_files(image_dir: str, extensions: Iterable[str] = IMAGE_EXTENSIONS) -> List[str]:
    """List frame images in a directory, sorted by filename.

    Args:
        image_dir: Directory holding the captured frames
        extensions: File extensions to accept (case-insensitive)

    Returns:
        Sorted list of image paths
    """
    wanted = _normalize_extensions(extensions)
    names = sorted(
        name for name in os.listdir(image_dir)
        if os.path.splitext(name)[1].lower() in wanted
        and os.path.isfile(os.path.join(image_dir, name))
    )
    return [os.path.join(image_dir, name) for name in names]


def load_frame_image(path: str) -> Optional[np.ndarray]:
    """Load one frame as an OpenCV (BGR) image, or None if it cannot be read."""
    try:
        with Image.open(path) as pil_img:
            rgb = pil_img.convert('RGB')
    except OSError as e:
        click.echo(f"Warning: cannot read frame {os.path.basename(path)}: {e}", err=True)
        return None

    img_array = np.array(rgb)
    return cv2.cvtColor(img_array, cv2.COLOR_RGB2BGR)


def decode_qr_payload(image: np.ndarray) -> Optional[bytes]:
    """Find the first QR code in an image and return its base64-decoded payload.

    Args:
        image: OpenCV image (numpy array)

    Returns:
        Raw payload bytes, or None if no readable code was found
    """
    try:
        from pyzbar import pyzbar
        from pyzbar.pyzbar import ZBarSymbol
    except ImportError as e:
        raise ImportError(
            f"pyzbar and the zbar shared library are required for decoding ({e}). "
            "Install them with: pip install pyzbar, plus libzbar0 from your system packages"
        )

    gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    decoded_objects = pyzbar.decode(gray, symbols=[ZBarSymbol.QRCODE])
    if not decoded_objects:
        return None

    try:
        b64_string = decoded_objects[0].data.decode('ascii')
        return base64.b64decode(b64_string, validate=True)
    except (UnicodeDecodeError, binascii.Error):
        return None


def iter_frame_payloads(paths: Iterable[str], verbose: bool = False) -> Iterator[bytes]:
    """Lazily load and decode frames, skipping those without a readable code."""
    for path in paths:
        image = load_frame_image(path)
        if image is None:
            continue
        payload = decode_qr_payload(image)
        if payload is None:
            if verbose:
                click.echo(f"No QR code in {os.path.basename(path)}")
            continue
        yield payload


def recover_file(image_dir: str, extensions: Iterable[str] = IMAGE_EXTENSIONS,
                 verbose: bool = False) -> Tuple[Optional[bytes], Dict[str, Any]]:
    """Decode every frame in a directory and reassemble the transmitted file.

    Args:
        image_dir: Directory holding the captured frames
        extensions: Image file extensions to consider
        verbose: Echo per-frame progress

    Returns:
        Tuple of (file_data, report_dict), as returned by reassemble()

    Raises:
        ProtocolError: If the transfer metadata is malformed
    """
    paths = list_frame_files(image_dir, extensions)
    state = run_decoder(iter_frame_payloads(paths, verbose), verbose)
    return reassemble(state)


# ============================================================================
# CLI COMMANDS
# ============================================================================

@click.group()
@click.version_option(version=VERSION)
def cli():
    """QR Frame Restore - Rebuild files sent as a sequence of QR code images."""
    pass


@cli.command()
@click.argument('image_dir', type=click.Path(exists=True, file_okay=False))
@click.option('-o', '--output', type=click.Path(dir_okay=False), required=True,
              help='Output file path (required)')
@click.option('--force', is_flag=True,
              help='Overwrite existing output file')
@click.option('-e', '--extension', 'extensions', multiple=True,
              help='Image extension to scan (repeatable) [default: common image types]')
@click.option('-v', '--verbose', is_flag=True,
              help='Show per-frame progress')
def decode(image_dir, output, force, extensions, verbose):
    """Decode a directory of QR frames into the original file.

    Example:
        qr_frame_restore decode frames/ -o recovered.bin
    """
    if os.path.exists(output) and not force:
        click.echo(f"Error: Output file '{output}' already exists. Use --force to overwrite.", err=True)
        sys.exit(1)

    try:
        click.echo(f"\nDecoding: {image_dir}")
        paths = list_frame_files(image_dir, extensions or IMAGE_EXTENSIONS)
        click.echo(f"Found {len(paths)} frame images")

        if not paths:
            click.echo("Error: No frame images found", err=True)
            sys.exit(1)

        if verbose:
            state = run_decoder(iter_frame_payloads(paths, verbose), verbose)
        else:
            with click.progressbar(paths, label='Scanning frames') as bar:
                state = run_decoder(iter_frame_payloads(bar))

        file_data, report = reassemble(state)
    except (ValueError, ImportError) as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)

    click.echo(f"Frames decoded: {report['frames_seen']} ({report['frames_rejected']} rejected)")
    if report['segment_count'] is not None:
        click.echo(f"Segments: {report['found_segments']}/{report['segment_count']}")
    if report['conflicting_segments']:
        click.echo(f"Warning: Conflicting duplicates for segments: {report['conflicting_segments']}",
                   err=True)

    if file_data is None:
        click.echo(f"\nError: {report['reason']}", err=True)
        sys.exit(1)

    try:
        with open(output, 'wb') as f:
            f.write(file_data)
    except OSError as e:
        click.echo(f"\nError: Cannot write output file: {e}", err=True)
        sys.exit(1)

    click.echo(f"\nRecovered: {output} ({len(file_data):,} bytes)")
    click.echo(f"Verification: PASS (MD5: {report['actual_checksum']})")


@cli.command()
@click.argument('image_dir', type=click.Path(exists=True, file_okay=False))
@click.option('-e', '--extension', 'extensions', multiple=True,
              help='Image extension to scan (repeatable) [default: common image types]')
def info(image_dir, extensions):
    """Display the transfer metadata found in a directory of QR frames.

    Example:
        qr_frame_restore info frames/
    """
    try:
        click.echo(f"\nReading: {image_dir}")
        paths = list_frame_files(image_dir, extensions or IMAGE_EXTENSIONS)
        if not paths:
            click.echo("Error: No frame images found", err=True)
            sys.exit(1)

        state = DecoderState()
        cursor = FrameCursor(iter_frame_payloads(paths))
        if not acquire_metadata(state, cursor):
            click.echo("Error: No transfer metadata found", err=True)
            sys.exit(1)
    except (ValueError, ImportError) as e:
        click.echo(f"\nError: {e}", err=True)
        sys.exit(1)

    metadata = state.metadata
    click.echo(f"\n{'='*60}")
    click.echo("QR FRAME TRANSFER METADATA")
    click.echo(f"{'='*60}")
    click.echo(f"Segment Count:       {metadata.segment_count}")
    click.echo(f"Segment Id Width:    {metadata.id_width} byte(s)")
    click.echo(f"Frame Digest Length: {metadata.hash_length} bytes (BLAKE2b)")
    click.echo(f"Frames Scanned:      {cursor.consumed}")
    click.echo(f"Frame Images:        {len(paths)}")
    click.echo(f"{'='*60}\n")


if __name__ == '__main__':
    cli()
