# Copyright (c) 2023 uib GmbH <info@uib.de>
# This code is owned by the uib GmbH, Mainz, Germany (uib.de). All rights reserved.
# License: AGPL-3.0

import argparse
import logging
import sys
from pathlib import Path

from pagepatch import (
	DEFAULT_BLOCK_SIZE,
	PatchApplier,
	ProgressListener,
	apply_patch_set,
	copy_by_patch,
	make_checksum_set,
	make_patch_set,
	patch_ratio,
	read_checksum_set,
	read_patch_set,
	write_checksum_set,
	write_patch_set,
)


class PrintingProgressListener(ProgressListener):
	def __init__(self) -> None:
		self.last_completed = 0.0

	def progress_changed(self, applier: PatchApplier, position: int, total: int) -> None:
		completed = round(position * 100 / total, 1) if total else 100.0
		if completed == self.last_completed:
			return
		print(f"\r::: {completed:0.1f} % ::: {position/1_000_000:.2f}/{total/1_000_000:.2f} MB :::", end="")
		self.last_completed = completed


def checksums(base_file: Path, output_file: Path | None = None, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
	output_file = output_file or base_file.with_name(f"{base_file.name}.checksums")
	checksum_set = make_checksum_set(base_file, block_size)
	write_checksum_set(checksum_set, output_file)
	print(f"Wrote {len(checksum_set.hashes)} block checksums to {output_file}")


def diff(goal_file: Path, checksums_file: Path, output_file: Path | None = None) -> None:
	output_file = output_file or goal_file.with_name(f"{goal_file.name}.patch")
	patch_set = make_patch_set(goal_file, read_checksum_set(checksums_file))
	write_patch_set(patch_set, output_file)
	print(f"Wrote {len(patch_set.patches)} patches ({patch_ratio(patch_set):.2f}% of {goal_file}) to {output_file}")


def apply(base_file: Path, patch_file: Path, dst_file: Path) -> None:
	patch_set = read_patch_set(patch_file)
	print(f"Applying {len(patch_set.patches)} patches to {base_file}...")
	apply_patch_set(base_file, patch_set, dst_file, progress_listener=PrintingProgressListener())
	print("")
	print(f"Successfully created {dst_file}")


def compare(goal_file: Path, base_file: Path, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
	patch_set = make_patch_set(goal_file, make_checksum_set(base_file, block_size))
	ratio = patch_ratio(patch_set)
	print(f"{base_file} contains {100 - ratio:.2f}% of data to create {goal_file}")


def copy(goal_file: Path, base_file: Path, dst_file: Path, block_size: int = DEFAULT_BLOCK_SIZE) -> None:
	patch_set = copy_by_patch(goal_file, base_file, dst_file, block_size=block_size)
	print(f"Successfully created {dst_file} transferring {patch_ratio(patch_set):.2f}% of {goal_file}")


def main() -> None:
	parser = argparse.ArgumentParser(prog="pagepatch")
	parser.add_argument("--log-level", choices=["debug", "info", "warning", "error", "critical"], default="warning")

	subparsers = parser.add_subparsers(dest="command")

	p_checksums = subparsers.add_parser("checksums", help="Create block checksums of BASE")
	p_checksums.add_argument("base", help="Path to the base file")
	p_checksums.add_argument("-o", "--output", help="Path to the checksum file")
	p_checksums.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)

	p_diff = subparsers.add_parser("diff", help="Create patches which turn the base file into GOAL")
	p_diff.add_argument("goal", help="Path to the goal file")
	p_diff.add_argument("checksums", help="Path to the checksum file of the base file")
	p_diff.add_argument("-o", "--output", help="Path to the patch file")

	p_apply = subparsers.add_parser("apply", help="Create DST from BASE and PATCH")
	p_apply.add_argument("base", help="Path to the base file")
	p_apply.add_argument("patch", help="Path to the patch file")
	p_apply.add_argument("dst", help="Path to the destination file")

	p_compare = subparsers.add_parser("compare", help="Compare two files")
	p_compare.add_argument("file", help="Path to the goal and the base file", nargs=2)
	p_compare.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)

	p_copy = subparsers.add_parser("copy", help="Create DST from BASE to match GOAL")
	p_copy.add_argument("goal", help="Path to the goal file")
	p_copy.add_argument("base", help="Path to the base file")
	p_copy.add_argument("dst", help="Path to the destination file")
	p_copy.add_argument("--block-size", type=int, default=DEFAULT_BLOCK_SIZE)

	args = parser.parse_args()

	logging.basicConfig(format="[%(levelno)d] [%(asctime)s.%(msecs)03d] %(message)s   (%(filename)s:%(lineno)d)")
	logging.getLogger().setLevel(getattr(logging, args.log_level.upper()))

	if args.command == "checksums":
		return checksums(Path(args.base), Path(args.output) if args.output else None, args.block_size)

	if args.command == "diff":
		return diff(Path(args.goal), Path(args.checksums), Path(args.output) if args.output else None)

	if args.command == "apply":
		return apply(Path(args.base), Path(args.patch), Path(args.dst))

	if args.command == "compare":
		return compare(Path(args.file[0]), Path(args.file[1]), args.block_size)

	if args.command == "copy":
		return copy(Path(args.goal), Path(args.base), Path(args.dst), args.block_size)

	parser.print_help()


if __name__ == "__main__":
	try:
		main()
	except Exception as err:
		print(err, file=sys.stderr)
		sys.exit(1)
	sys.exit(0)
