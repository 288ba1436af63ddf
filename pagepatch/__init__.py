# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

from __future__ import annotations

import json
from contextlib import ExitStack
from enum import IntEnum
from logging import getLogger
from pathlib import Path
from threading import Lock
from typing import Any, BinaryIO, Generator, NamedTuple

import xxhash

__version__ = "0.1.0"

DEFAULT_BLOCK_SIZE = 4096  # SQLite's default page size
HASH_SEED = 273892837
MAX_PATCH_SIZE = DEFAULT_BLOCK_SIZE * 20
COPY_CHUNK_SIZE = 65536

logger = getLogger("pagepatch")

BlockHash = int


class PatchFailed(RuntimeError):
	"""The reconstructed file does not match the footer checksum"""

	def __init__(self, path: Path, expected: int, actual: int) -> None:
		super().__init__(f"File checksums didn't match for {path}: expected {expected:#010x}, got {actual:#010x}")
		self.path = path
		self.expected = expected
		self.actual = actual


class BytePatch(NamedTuple):
	"""Bytes the destination file must contain starting at offset"""

	offset: int
	data: bytes


class Footer(NamedTuple):
	"""Size and whole-file checksum of the goal file"""

	size: int
	checksum: int


class ChecksumSet(NamedTuple):
	block_size: int
	hashes: tuple[BlockHash, ...]


class PatchSet(NamedTuple):
	block_size: int
	patches: tuple[BytePatch, ...]
	footer: Footer


class PatchMakerState(IntEnum):
	STREAMING = 1
	DRAINING = 2
	FINALIZED = 3


class PatchApplierState(IntEnum):
	APPLYING = 1
	FINALIZING = 2
	DONE = 3
	FAILED = 4


def _check_positive(name: str, value: int) -> None:
	if value <= 0:
		raise ValueError(f"{name} must be positive, got {value}")


def hash_block(data: bytes) -> BlockHash:
	return xxhash.xxh32_intdigest(data, seed=HASH_SEED)


def hash_blocks(file: Path, block_size: int = DEFAULT_BLOCK_SIZE) -> Generator[BlockHash, None, None]:
	"""
	Read `file` in blocks of `block_size` bytes and yield the hash of each block.
	The last block may be shorter than `block_size`.
	"""
	_check_positive("block_size", block_size)
	with open(file, "rb") as fh:
		while block := fh.read(block_size):
			yield hash_block(block)


class PendingPatch:
	"""Patch held back by the PatchMaker until it can not be extended any further"""

	def __init__(self, patch: BytePatch) -> None:
		self.offset = patch.offset
		self.data = bytearray(patch.data)

	@property
	def end(self) -> int:
		return self.offset + len(self.data)

	def to_patch(self) -> BytePatch:
		return BytePatch(self.offset, bytes(self.data))


def combine(pending: PendingPatch, candidate: BytePatch, max_size: int = MAX_PATCH_SIZE) -> bool:
	"""
	Append `candidate` to `pending` if it starts exactly where `pending` ends
	and the combined size does not exceed `max_size`.
	Returns `False` and leaves `pending` unchanged otherwise.
	"""
	if len(pending.data) + len(candidate.data) > max_size:
		return False
	if pending.end != candidate.offset:
		return False
	pending.data += candidate.data
	return True


class PatchMaker:
	"""
	Compares the goal file block by block against the hashes of the base file.
	Call `compute_patch` once per base block hash, then consume `remaining_patches`
	and finally fetch the `footer`.
	"""

	def __init__(self, goal_file: Path, block_size: int = DEFAULT_BLOCK_SIZE, max_patch_size: int = MAX_PATCH_SIZE) -> None:
		_check_positive("block_size", block_size)
		_check_positive("max_patch_size", max_patch_size)
		self.goal_file = Path(goal_file)
		self.block_size = block_size
		self.max_patch_size = max_patch_size
		self._state = PatchMakerState.STREAMING
		self._size = 0
		self._hasher = xxhash.xxh32(seed=HASH_SEED)
		self._pending: PendingPatch | None = None
		self._footer: Footer | None = None
		self._fh: BinaryIO = open(self.goal_file, "rb")

	def __enter__(self) -> PatchMaker:
		return self

	def __exit__(self, *args: Any) -> None:
		self.close()

	@property
	def state(self) -> PatchMakerState:
		return self._state

	def close(self) -> None:
		if not self._fh.closed:
			self._fh.close()

	def _offer(self, candidate: BytePatch) -> BytePatch | None:
		if self._pending is None:
			self._pending = PendingPatch(candidate)
			return None
		if combine(self._pending, candidate, self.max_patch_size):
			logger.debug("Extended patch @%d to %d bytes", self._pending.offset, len(self._pending.data))
			return None
		flushed = self._pending.to_patch()
		self._pending = PendingPatch(candidate)
		logger.debug("Patch @%d with %d bytes is final", flushed.offset, len(flushed.data))
		return flushed

	def _diff_block(self, block_hash: BlockHash | None) -> tuple[bool, BytePatch | None]:
		"""
		Read the next goal block and compare it to `block_hash`.
		Every block read counts towards the footer, whether it matches or not.
		A `block_hash` of `None` means there is nothing to compare to.
		Returns a tuple of (end of file reached, flushed patch).
		"""
		offset = self._fh.tell()
		block = self._fh.read(self.block_size)
		if not block:
			return True, None
		self._hasher.update(block)
		self._size += len(block)
		if block_hash is not None and hash_block(block) == block_hash:
			return False, None
		logger.debug("Block @%d with %d bytes differs", offset, len(block))
		return False, self._offer(BytePatch(offset, block))

	def compute_patch(self, block_hash: BlockHash) -> BytePatch | None:
		"""
		Compare the next goal block against the hash of the corresponding base block.
		Returns a patch once it can no longer be extended, `None` otherwise.
		"""
		if self._state != PatchMakerState.STREAMING:
			raise RuntimeError(f"Can not compute patches in state {self._state.name}")
		return self._diff_block(block_hash)[1]

	def remaining_patches(self) -> Generator[BytePatch, None, None]:
		"""
		Yield patches for goal data beyond the end of the base file
		and the pending patch. Finalizes the footer when exhausted.
		"""
		if self._state == PatchMakerState.FINALIZED:
			raise RuntimeError("Patch maker is already finalized")
		self._state = PatchMakerState.DRAINING
		while True:
			eof, patch = self._diff_block(None)
			if patch:
				yield patch
			if eof:
				break
		if self._pending:
			yield self._pending.to_patch()
			self._pending = None
		self._footer = Footer(self._size, self._hasher.intdigest())
		self._state = PatchMakerState.FINALIZED
		self.close()
		logger.debug("Goal file %s finalized: %r", self.goal_file, self._footer)

	def footer(self) -> Footer:
		if self._footer is None:
			raise RuntimeError("Remaining patches have not been consumed")
		return self._footer


class ProgressListener:
	def progress_changed(self, applier: PatchApplier, position: int, total: int) -> None:
		pass


class PatchApplier:
	"""
	Writes the destination file from the base file and a stream of patches.
	Base and destination positions are kept in sync, data between patches
	is copied from the base file.
	"""

	def __init__(self, base_file: Path, dst_file: Path, total_size: int | None = None) -> None:
		self.base_file = Path(base_file)
		self.dst_file = Path(dst_file)
		self.total_size = total_size
		self._state = PatchApplierState.APPLYING
		self._hasher = xxhash.xxh32(seed=HASH_SEED)
		self._progress_listeners: list[ProgressListener] = []
		self._progress_listener_lock = Lock()
		with ExitStack() as stack:
			self._base: BinaryIO = stack.enter_context(open(self.base_file, "rb"))
			self._dst: BinaryIO = stack.enter_context(open(self.dst_file, "wb"))
			self._files = stack.pop_all()

	def __enter__(self) -> PatchApplier:
		return self

	def __exit__(self, *args: Any) -> None:
		self.close()

	@property
	def state(self) -> PatchApplierState:
		return self._state

	@property
	def position(self) -> int:
		return self._dst.tell()

	def close(self) -> None:
		self._files.close()

	def register_progress_listener(self, listener: ProgressListener) -> None:
		with self._progress_listener_lock:
			if listener not in self._progress_listeners:
				self._progress_listeners.append(listener)

	def unregister_progress_listener(self, listener: ProgressListener) -> None:
		with self._progress_listener_lock:
			if listener in self._progress_listeners:
				self._progress_listeners.remove(listener)

	def _call_progress_listeners(self) -> None:
		position = self._dst.tell()
		total = self.total_size if self.total_size is not None else position
		with self._progress_listener_lock:
			for progress_listener in self._progress_listeners:
				try:
					progress_listener.progress_changed(self, position, total)
				except Exception as err:
					logger.warning(err)

	def _write(self, data: bytes) -> None:
		self._hasher.update(data)
		self._dst.write(data)
		self._call_progress_listeners()

	def _copy_from_base(self, size: int) -> None:
		remaining = size
		while remaining > 0:
			data = self._base.read(min(remaining, COPY_CHUNK_SIZE))
			if not data:
				logger.debug("Base file %s ended %d bytes early", self.base_file, remaining)
				return
			self._write(data)
			remaining -= len(data)

	def apply_patch(self, patch: BytePatch) -> None:
		"""Apply a single patch"""
		if self._state != PatchApplierState.APPLYING:
			raise RuntimeError(f"Can not apply patches in state {self._state.name}")
		if not patch.data:
			raise ValueError(f"Empty patch @{patch.offset}")
		position = self._dst.tell()
		gap = patch.offset - position
		if gap < 0:
			raise ValueError(f"Patch @{patch.offset} overlaps data already written up to {position}")
		logger.debug("Applying patch @%d with %d bytes after %d bytes from base", patch.offset, len(patch.data), gap)
		self._copy_from_base(gap)
		self._write(patch.data)
		self._base.seek(self._dst.tell())

	def apply_footer(self, footer: Footer) -> None:
		"""Copy the rest of the base file and verify the checksum"""
		if self._state != PatchApplierState.APPLYING:
			raise RuntimeError(f"Can not apply footer in state {self._state.name}")
		self._state = PatchApplierState.FINALIZING
		try:
			gap = footer.size - self._dst.tell()
			if gap < 0:
				self._state = PatchApplierState.FAILED
				raise ValueError(f"Patches extend beyond the file size of {footer.size}")
			self._copy_from_base(gap)
		finally:
			self.close()

		checksum = self._hasher.intdigest()
		if checksum != footer.checksum:
			self._state = PatchApplierState.FAILED
			logger.error("Checksum mismatch for %s: expected %#010x, got %#010x", self.dst_file, footer.checksum, checksum)
			raise PatchFailed(self.dst_file, footer.checksum, checksum)
		self._state = PatchApplierState.DONE


def make_checksum_set(base_file: Path, block_size: int = DEFAULT_BLOCK_SIZE) -> ChecksumSet:
	cset = ChecksumSet(block_size=block_size, hashes=tuple(hash_blocks(base_file, block_size)))
	logger.info("Calculated %d block hashes for %s", len(cset.hashes), base_file)
	return cset


def make_patch_set(goal_file: Path, checksum_set: ChecksumSet, max_patch_size: int = MAX_PATCH_SIZE) -> PatchSet:
	patches: list[BytePatch] = []
	with PatchMaker(goal_file, block_size=checksum_set.block_size, max_patch_size=max_patch_size) as maker:
		for block_hash in checksum_set.hashes:
			patch = maker.compute_patch(block_hash)
			if patch is not None:
				patches.append(patch)
		patches.extend(maker.remaining_patches())
		footer = maker.footer()
	logger.info("Created %d patches for %s (%d bytes)", len(patches), goal_file, footer.size)
	return PatchSet(block_size=checksum_set.block_size, patches=tuple(patches), footer=footer)


def apply_patch_set(
	base_file: Path,
	patch_set: PatchSet,
	dst_file: Path,
	*,
	progress_listener: ProgressListener | None = None,
) -> None:
	"""
	Reconstructs the goal file from the base file and a patch set.

	:param base_file: The file the checksum set of the patch set was created from.
	:param patch_set: The patch set to apply.
	:param dst_file: Output file. Left behind unverified if the checksum does not match.
	:param progress_listener: Optional listener informed about every write.
	:raises PatchFailed: If the checksum of the destination file does not match the footer.
	"""
	with PatchApplier(base_file, dst_file, total_size=patch_set.footer.size) as applier:
		if progress_listener:
			applier.register_progress_listener(progress_listener)
		for patch in patch_set.patches:
			applier.apply_patch(patch)
		applier.apply_footer(patch_set.footer)
	logger.info("Applied %d patches to %s, created %s", len(patch_set.patches), base_file, dst_file)


def copy_by_patch(
	goal_file: Path, base_file: Path, dst_file: Path, *, block_size: int = DEFAULT_BLOCK_SIZE, max_patch_size: int = MAX_PATCH_SIZE
) -> PatchSet:
	cset = make_checksum_set(base_file, block_size)
	pset = make_patch_set(goal_file, cset, max_patch_size)
	apply_patch_set(base_file, pset, dst_file)
	return pset


def patch_ratio(patch_set: PatchSet) -> float:
	"""Percentage of the goal file which is transferred as patch data"""
	if not patch_set.footer.size:
		return 0.0
	return sum(len(p.data) for p in patch_set.patches) * 100 / patch_set.footer.size


# Byte payloads are stored as JSON strings with one code point per byte
def _encode_bytes(data: bytes) -> str:
	return data.decode("latin-1")


def _decode_bytes(data: str) -> bytes:
	return data.encode("latin-1")


def _expect_int(value: Any, what: str) -> int:
	if not isinstance(value, int) or isinstance(value, bool) or value < 0:
		raise ValueError(f"Invalid {what}: expected a non-negative integer, got {value!r}")
	return value


def _expect_pair(value: Any, what: str) -> list:
	if not isinstance(value, list) or len(value) != 2:
		raise ValueError(f"Invalid {what}: expected an array of 2 elements, got {type(value).__name__}")
	return value


def _expect_object(value: Any, what: str, keys: tuple[str, ...]) -> dict:
	if not isinstance(value, dict):
		raise ValueError(f"Invalid {what}: expected an object, got {type(value).__name__}")
	missing = [k for k in keys if k not in value]
	if missing:
		raise ValueError(f"Invalid {what}: missing {', '.join(missing)}")
	return value


def to_json(value: BlockHash | BytePatch | Footer | ChecksumSet | PatchSet) -> Any:
	if isinstance(value, BytePatch):
		return [value.offset, _encode_bytes(value.data)]
	if isinstance(value, Footer):
		return [value.size, value.checksum]
	if isinstance(value, ChecksumSet):
		return {"chunksize": value.block_size, "hashes": list(value.hashes)}
	if isinstance(value, PatchSet):
		return {
			"chunksize": value.block_size,
			"patches": [to_json(p) for p in value.patches],
			"footer": to_json(value.footer),
		}
	if isinstance(value, int) and not isinstance(value, bool):
		return value
	raise TypeError(f"Can not encode {type(value).__name__}")


def block_hash_from_json(data: Any) -> BlockHash:
	value = _expect_int(data, "block hash")
	if value > 0xFFFFFFFF:
		raise ValueError(f"Invalid block hash: {value} exceeds 32 bits")
	return value


def byte_patch_from_json(data: Any) -> BytePatch:
	offset, payload = _expect_pair(data, "patch")
	if not isinstance(payload, str) or not payload:
		raise ValueError("Invalid patch: data must be a non-empty string")
	return BytePatch(_expect_int(offset, "patch offset"), _decode_bytes(payload))


def footer_from_json(data: Any) -> Footer:
	size, checksum = _expect_pair(data, "footer")
	return Footer(_expect_int(size, "footer size"), block_hash_from_json(checksum))


def checksum_set_from_json(data: Any) -> ChecksumSet:
	obj = _expect_object(data, "checksum set", ("chunksize", "hashes"))
	if not isinstance(obj["hashes"], list):
		raise ValueError("Invalid checksum set: hashes must be an array")
	block_size = _expect_int(obj["chunksize"], "chunksize")
	_check_positive("chunksize", block_size)
	return ChecksumSet(block_size=block_size, hashes=tuple(block_hash_from_json(h) for h in obj["hashes"]))


def patch_set_from_json(data: Any) -> PatchSet:
	obj = _expect_object(data, "patch set", ("chunksize", "patches", "footer"))
	if not isinstance(obj["patches"], list):
		raise ValueError("Invalid patch set: patches must be an array")
	block_size = _expect_int(obj["chunksize"], "chunksize")
	_check_positive("chunksize", block_size)
	return PatchSet(
		block_size=block_size,
		patches=tuple(byte_patch_from_json(p) for p in obj["patches"]),
		footer=footer_from_json(obj["footer"]),
	)


def write_checksum_set(checksum_set: ChecksumSet, file: Path) -> None:
	Path(file).write_text(json.dumps(to_json(checksum_set)), encoding="utf-8")


def read_checksum_set(file: Path) -> ChecksumSet:
	return checksum_set_from_json(json.loads(Path(file).read_text(encoding="utf-8")))


def write_patch_set(patch_set: PatchSet, file: Path) -> None:
	Path(file).write_text(json.dumps(to_json(patch_set)), encoding="utf-8")


def read_patch_set(file: Path) -> PatchSet:
	return patch_set_from_json(json.loads(Path(file).read_text(encoding="utf-8")))
