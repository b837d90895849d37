"""
Tests for reassembly and the end-to-end decoding scenarios
"""

import os
import sys
import hashlib
import random

import pytest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import qr_frame_restore as qfr
from tests.frame_helpers import make_frame, data_frame, build_transfer


def decode_frames(frames):
    return qfr.reassemble(qfr.run_decoder(frames))


class TestReassemble:
    """Test reassemble() on hand-built decoder states"""

    def _state(self, segments, checksum_of=None, segment_count=None):
        state = qfr.DecoderState(
            metadata=qfr.TransferMetadata(
                segment_count=len(segments) if segment_count is None else segment_count,
                id_width=1, hash_length=8),
        )
        for segment_id, payload in segments.items():
            state.segments[segment_id] = qfr.ContentSegment(id=segment_id, payload=payload, digest=b'')
        if checksum_of is not None:
            state.checksum = qfr.ChecksumSegment(payload=hashlib.md5(checksum_of).digest(), digest=b'')
        return state

    def test_concatenates_by_ascending_id(self):
        """Test payloads are joined in id order regardless of insertion order"""
        state = self._state({2: b'CC', 0: b'AA', 1: b'BB'}, checksum_of=b'AABBCC')
        file_data, report = qfr.reassemble(state)

        assert file_data == b'AABBCC'
        assert report['status'] == qfr.STATUS_OK
        assert report['actual_checksum'] == hashlib.md5(b'AABBCC').hexdigest()
        assert report['expected_checksum'] == report['actual_checksum']

    def test_no_metadata(self):
        """Test a run without metadata reports no transmission"""
        file_data, report = qfr.reassemble(qfr.DecoderState())

        assert file_data is None
        assert report['status'] == qfr.STATUS_NO_TRANSMISSION
        assert "No transmission detected" in report['reason']

    def test_missing_segments_listed(self):
        """Test the missing ids are exactly the set difference"""
        state = self._state({0: b'A', 3: b'D'}, checksum_of=b'ABCD', segment_count=5)
        file_data, report = qfr.reassemble(state)

        assert file_data is None
        assert report['status'] == qfr.STATUS_MISSING_SEGMENTS
        assert report['missing_segments'] == [1, 2, 4]
        assert report['found_segments'] == 2

    def test_missing_checksum_is_mismatch(self):
        """Test a complete set without a checksum counts as a mismatch"""
        file_data, report = qfr.reassemble(self._state({0: b'A'}))

        assert file_data is None
        assert report['status'] == qfr.STATUS_CHECKSUM_MISMATCH
        assert report['expected_checksum'] is None

    def test_checksum_compare_ignores_case(self):
        """Test hex comparison is case-insensitive"""
        state = self._state({0: b'data'})
        hex_body = hashlib.md5(b'data').hexdigest().upper().encode('ascii')
        md = state.metadata
        state.checksum = qfr.parse_frame(make_frame(b'H', hex_body, md.hash_length), md)

        file_data, report = qfr.reassemble(state)
        assert file_data == b'data'

    def test_zero_segments(self):
        """Test an empty file transmits as zero segments"""
        state = self._state({}, checksum_of=b'')
        file_data, report = qfr.reassemble(state)

        assert file_data == b''
        assert report['status'] == qfr.STATUS_OK

    def test_conflicts_reported(self):
        """Test conflicting duplicate ids show up in the report"""
        state = self._state({0: b'A'}, checksum_of=b'A')
        state.conflicting_ids.add(0)
        _, report = qfr.reassemble(state)

        assert report['conflicting_segments'] == [0]


class TestScenarios:
    """Frame sequences from the protocol description"""

    HASH_LENGTH = 4

    def _frames(self, checksum_body=None, drop_id=None):
        h = self.HASH_LENGTH
        frames = [
            make_frame(b'M', b'{"segment_count":2,"id_wid', h),
            make_frame(b'M', b'th":1,"hash_length":4}', h),
        ]
        for segment_id, payload in ((0, b'AB'), (1, b'CD')):
            if segment_id != drop_id:
                frames.append(data_frame(segment_id, payload, h))
        body = hashlib.md5(b'ABCD').digest() if checksum_body is None else checksum_body
        frames.append(make_frame(b'H', body, h))
        return frames

    def test_two_segment_transfer(self):
        """Test the basic two-segment transfer yields ABCD"""
        file_data, report = decode_frames(self._frames())

        assert file_data == b'ABCD'
        assert report['status'] == qfr.STATUS_OK

    def test_wrong_embedded_checksum(self):
        """Test a wrong checksum value reports a mismatch and no output"""
        file_data, report = decode_frames(self._frames(checksum_body=hashlib.md5(b'ABCE').digest()))

        assert file_data is None
        assert report['status'] == qfr.STATUS_CHECKSUM_MISMATCH

    def test_missing_segment(self):
        """Test omitting segment 1 reports exactly [1]"""
        file_data, report = decode_frames(self._frames(drop_id=1))

        assert file_data is None
        assert report['status'] == qfr.STATUS_MISSING_SEGMENTS
        assert report['missing_segments'] == [1]


class TestReassemblyProperties:
    """Properties of the decode-and-reassemble pipeline"""

    DATA = bytes(random.Random(1234).getrandbits(8) for _ in range(300))

    def test_roundtrip_various_shapes(self):
        """Test id widths, digest lengths and chunk sizes reproduce the file"""
        for id_width in (1, 2, 4, 8):
            for hash_length in (2, 8, 32):
                frames = build_transfer(self.DATA, chunk_size=16, id_width=id_width,
                                        hash_length=hash_length, metadata_fragments=3)
                file_data, report = decode_frames(frames)
                assert file_data == self.DATA, (id_width, hash_length, report)

    def test_order_correct_when_shuffled(self):
        """Test output follows ids, not scan order"""
        frames = build_transfer(self.DATA, chunk_size=10)
        md, data, tail = frames[:2], frames[2:-1], frames[-1:]
        for seed in range(3):
            shuffled = list(data)
            random.Random(seed).shuffle(shuffled)
            file_data, _ = decode_frames(md + shuffled + tail)
            assert file_data == self.DATA

    def test_idempotent(self):
        """Test decoding the same sequence twice gives identical output"""
        frames = build_transfer(self.DATA, chunk_size=25)
        first, report_a = decode_frames(frames)
        second, report_b = decode_frames(frames)

        assert first == second == self.DATA
        assert report_a == report_b

    def test_each_single_missing_segment_reported(self):
        """Test dropping any one segment reports exactly that id"""
        frames = build_transfer(self.DATA, chunk_size=60)
        md, data, tail = frames[:2], frames[2:-1], frames[-1:]
        for missing in range(len(data)):
            file_data, report = decode_frames(md + data[:missing] + data[missing + 1:] + tail)
            assert file_data is None
            assert report['missing_segments'] == [missing]

    def test_altered_segment_with_valid_digest(self):
        """Test altered content with a recomputed digest fails the checksum, not the count"""
        frames = build_transfer(self.DATA, chunk_size=50)
        altered = bytearray(self.DATA[50:100])
        altered[7] ^= 0x01
        frames[3] = data_frame(1, bytes(altered), 8)

        file_data, report = decode_frames(frames)
        assert file_data is None
        assert report['status'] == qfr.STATUS_CHECKSUM_MISMATCH
        assert report['missing_segments'] == []

    def test_noise_between_frames(self):
        """Test unreadable and corrupted frames in the stream are tolerated"""
        frames = build_transfer(self.DATA, chunk_size=30)
        # Metadata frames are left clean: their digest length is guessed
        noisy = frames[:2]
        for frame in frames[2:]:
            noisy.append(frame)
            corrupted = bytearray(frame)
            corrupted[-1] ^= 0xFF
            noisy.append(bytes(corrupted))
            noisy.append(b'garbage')

        file_data, report = decode_frames(noisy)
        assert file_data == self.DATA
        assert report['frames_rejected'] > 0

    def test_corrupted_first_checksum_frame(self):
        """Test a corrupted checksum frame is skipped in favour of a later copy"""
        frames = build_transfer(self.DATA, chunk_size=30)
        corrupted = bytearray(frames[-1])
        corrupted[3] ^= 0x10
        file_data, _ = decode_frames(frames[:-1] + [bytes(corrupted), frames[-1]])

        assert file_data == self.DATA

    def test_stream_ends_before_checksum(self):
        """Test a capture cut before the checksum frame reports a mismatch"""
        frames = build_transfer(self.DATA, chunk_size=30)
        file_data, report = decode_frames(frames[:-1])

        assert file_data is None
        assert report['status'] == qfr.STATUS_CHECKSUM_MISMATCH

    def test_checksum_wrong_data(self):
        """Test a sender checksum over different data is caught"""
        frames = build_transfer(self.DATA, chunk_size=30, checksum_data=b'other')
        file_data, report = decode_frames(frames)

        assert file_data is None
        assert report['expected_checksum'] == hashlib.md5(b'other').hexdigest()


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
