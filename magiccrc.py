#!/usr/bin/env python3
#
# Magic CRC-32 (Python)
#
# Copyright (c) 2020 Project Nayuki
# https://www.nayuki.io/page/forcing-a-files-crc-to-any-value
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program (see COPYING.txt).
# If not, see <http://www.gnu.org/licenses/>.
#

import os, sys, zlib, argparse, re, shutil
from typing import BinaryIO, List, Optional, Tuple

__version__ = "1.00.0"

# ---- Constants ----
def constant(f):
	def f_set(self, value):
		raise TypeError
	def f_get(self):
		return f()
	return property(f_get, f_set)

class _Const(object):
	@constant
	def POLYNOMIAL() -> int:
		# Generator polynomial. Do not modify, because there are many dependencies
		return 0x104C11DB7

	@constant
	def MASK() -> int:
		return (1 << 32) - 1

	@constant
	def APPEND() -> int:
		# Offset sentinel: grow the stream by 4 zero bytes and patch those
		return -1

	@constant
	def DEFAULT_CRC() -> int:
		return 0xFFFFFFFF

	@constant
	def CHUNK_SIZE() -> int:
		return 128 * 1024

CONST = _Const()

APPEND: int = CONST.APPEND


class ExitCode(object):
	SUCCESS = 0
	NO_ARGUMENTS = 1
	PARAMETERS = 2
	INVALID_OFFSET = 3
	FILE_NOT_FOUND = 4
	IO_ERROR = 5
	ARITHMETIC = 6
	VERIFY_FAILED = 7


# ---- Errors ----

class MagicCrcError(Exception):
	pass


# Bad arguments: missing or empty stream, offset out of range, CRC wider than 32 bits.
class PreconditionError(MagicCrcError, ValueError):
	pass


# Polynomial arithmetic has no answer (division by zero, no reciprocal).
class DomainError(MagicCrcError, ArithmeticError):
	pass


# ---- ArgParse Functions ----
class SmartFormatter(argparse.HelpFormatter):
	# Each "\0" separated part is wrapped as its own paragraph
	def add_text(self, text):
		if text is None:
			return
		for line in text.split("\0"):
			if line.strip():
				super().add_text(line)


def crc_value(value: str) -> int:
	match = re.fullmatch(r"(?:0[xX])?([0-9a-fA-F]{1,8})", value.strip())
	if match is None:
		raise argparse.ArgumentTypeError(f"'{value}' is not a valid CRC-32 sum")
	return int(match.group(1), 16)

# ---- Main application ----

def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="magic-crc",
		description="""Calculates a Magic CRC-32 sum: changes 4 bytes of a file so
				that its CRC-32 becomes the requested value""",
		epilog="""If no offset is given, 4 new bytes are appended to the file
				and those are changed.\0Positive offsets count from the start of
				the file, negative offsets (-4 or less) from the end.\0If no
				output file is given, or it is the input file under another name,
				the input file is changed in place. Otherwise the input is copied
				to the output first.""",
		formatter_class=SmartFormatter)
	parser.add_argument('-v', '--version', action='version',
			version='%(prog)s {version}'.format(version=__version__))
	parser.add_argument("input", type=str, help="File whose CRC sum is to change")
	parser.add_argument("output", type=str, nargs='?', default=None,
			help="Location to write the new file to (default: overwrite input)")
	parser.add_argument("-c", "--crc", type=crc_value, default=CONST.DEFAULT_CRC,
			help="New CRC-32 sum as hex value, the 0x prefix is optional (default FFFFFFFF)")
	parser.add_argument("-o", "--offset", type=int, default=APPEND,
			help="Offset of the 4 bytes to change (default: append)")
	parser.add_argument("-q", "--quiet", action="store_true", help="Show only errors")
	return parser


def main(argv: Optional[List[str]] = None) -> int:
	if argv is None:
		argv = sys.argv[1:]
	parser = build_parser()
	if len(argv) == 0 or any(arg in ("-h", "--help", "-?", "/?") for arg in argv):
		parser.print_help(sys.stderr)
		return ExitCode.NO_ARGUMENTS
	args = parser.parse_args(argv)
	printstatus: bool = not args.quiet

	if not os.path.isfile(args.input):
		print("Input file not found", file=sys.stderr)
		return ExitCode.FILE_NOT_FOUND

	try:
		# Validate the input up front so nothing gets copied on bad input
		length: int = os.path.getsize(args.input)
		if length == 0:
			raise PreconditionError("Stream is empty")
		resolve_offset(args.offset, length)

		if args.output is None or same_file(args.input, args.output):
			target: str = args.input
		else:
			if printstatus:
				print("Copying file...", file=sys.stderr)
			shutil.copyfile(args.input, args.output)
			target = args.output

		if printstatus:
			print(f"Updating CRC to 0x{args.crc:08X}", file=sys.stderr)
		update_file_crc(target, args.crc, args.offset, printstatus)
	except PreconditionError as e:
		print("Error: " + str(e), file=sys.stderr)
		return ExitCode.INVALID_OFFSET
	except DomainError as e:
		print("Arithmetic error: " + str(e), file=sys.stderr)
		return ExitCode.ARITHMETIC
	except OSError as e:
		print("I/O error: " + str(e), file=sys.stderr)
		return ExitCode.IO_ERROR
	except AssertionError as e:
		print("Assertion error: " + str(e), file=sys.stderr)
		return ExitCode.VERIFY_FAILED
	if printstatus:
		print("Done", file=sys.stderr)
	return ExitCode.SUCCESS


# ---- Main function ----

# Public library function. offset is APPEND or in [-length, length-4], and target_crc is uint32.
# May raise OSError, PreconditionError, DomainError, AssertionError.
def update_file_crc(path: str, target_crc: int = CONST.DEFAULT_CRC, offset: int = APPEND,
		printstatus: bool = False) -> None:
	with open(path, "r+b") as file_stream:
		if printstatus:
			print(f"Current CRC-32: 0x{compute_checksum(file_stream):08X}", file=sys.stderr)
			print(f"Target CRC-32:  0x{target_crc:08X}", file=sys.stderr)

		apply_patch(file_stream, target_crc, offset)
		if printstatus:
			print("Computed and updated file", file=sys.stderr)

		# Recheck entire file
		file_stream.seek(0)
		output_crc: int = compute_checksum(file_stream)
		if output_crc != target_crc:
			raise AssertionError("Failed to update CRC-32 to desired value")
		if printstatus:
			print(f"Current CRC-32: 0x{output_crc:08X}", file=sys.stderr)


# ---- Stream functions ----

# Returns the CRC-32 of everything from the stream's current position to its end.
# The cursor is left at the end; nothing is written.
def compute_checksum(stream: BinaryIO) -> int:
	crc: int = 0
	while True:
		buffer: bytes = stream.read(CONST.CHUNK_SIZE)
		if len(buffer) == 0:
			return crc
		crc = zlib.crc32(buffer, crc)


# Returns the value that apply_patch turns into the 4 patch bytes. It is a
# polynomial, not bytes: it must go through reverse32 before being written.
# Only mutates the stream in append mode, by adding 4 zero bytes.
def compute_magic_delta(stream: BinaryIO, desired_crc: int = CONST.DEFAULT_CRC,
		offset: int = APPEND) -> int:
	delta, _ = _magic_delta(stream, desired_crc, offset)
	return delta


# Changes 4 bytes of the stream so that its CRC-32 becomes desired_crc.
# The stream must be readable, writable and seekable.
def apply_patch(stream: BinaryIO, desired_crc: int = CONST.DEFAULT_CRC,
		offset: int = APPEND) -> None:
	delta, offset = _magic_delta(stream, desired_crc, offset)

	# Patch 4 bytes in the stream
	stream.seek(offset)
	bytes4: bytearray = bytearray(stream.read(4))
	if len(bytes4) != 4:
		raise IOError("Cannot read 4 bytes at offset")
	patch: int = reverse32(delta)
	for i in range(4):
		bytes4[i] ^= (patch >> (i * 8)) & 0xFF
	stream.seek(offset)
	stream.write(bytes4)


# Returns the magic delta together with the resolved, non-negative offset.
def _magic_delta(stream: BinaryIO, desired_crc: int, offset: int) -> Tuple[int,int]:
	if stream is None:
		raise PreconditionError("No stream given")
	if not 0 <= desired_crc <= CONST.MASK:
		raise PreconditionError("CRC must be a 32-bit value")
	length: int = stream.seek(0, os.SEEK_END)
	if length == 0:
		raise PreconditionError("Stream is empty")
	offset = resolve_offset(offset, length)

	if offset == APPEND:
		offset = length
		stream.write(bytes(4))
		length += 4

	# Read entire stream and calculate original CRC-32 value
	stream.seek(0)
	current_crc: int = compute_checksum(stream)

	# Compute the change to make
	delta: int = reverse32(current_crc) ^ reverse32(desired_crc)
	delta = multiply_mod(reciprocal_mod(pow_mod(2, (length - offset) * 8)), delta)
	return (delta, offset)


# ---- Utilities ----

def reverse32(x: int) -> int:
	y: int = 0
	for _ in range(32):
		y = (y << 1) | (x & 1)
		x >>= 1
	return y


# Turns a negative offset (counted from the end) into one counted from the start.
# APPEND is passed through untouched.
def resolve_offset(offset: int, length: int) -> int:
	if offset == APPEND:
		return offset
	if offset > length - 4:
		raise PreconditionError(f"Offset too large. Maximum is {length - 4} (length - 4)")
	if offset < -length:
		raise PreconditionError(f"Offset too small. Minimum is {-length} (0 - length)")
	if -4 < offset < 0:
		raise PreconditionError(f"Negative offsets must be -4 or less. Given: {offset}")
	if offset < 0:
		return length + offset
	return offset


# Whether two paths name the same file (hard links, symlinks, relative paths).
# At least one of them has to exist.
def same_file(path1: Optional[str], path2: Optional[str]) -> bool:
	if path1 is None and path2 is None:
		return True
	if path1 is None or path2 is None:
		raise ValueError("Only one path given")
	if path1 == path2:
		return True
	exists1: bool = os.path.exists(path1)
	exists2: bool = os.path.exists(path2)
	if not exists1 and not exists2:
		raise ValueError("At least one argument needs to point to an existing file")
	if not exists1 or not exists2:
		return False
	return os.path.samefile(path1, path2)


# ---- Polynomial arithmetic ----

# Returns polynomial x multiplied by polynomial y modulo the generator polynomial.
# x must already be reduced (degree 32 or less).
def multiply_mod(x: int, y: int) -> int:
	# Russian peasant multiplication algorithm
	z: int = 0
	while y != 0:
		z ^= x * (y & 1)
		y >>= 1
		x <<= 1
		if (x >> 32) & 1 != 0:
			x ^= CONST.POLYNOMIAL
	return z


# Returns polynomial x to the power of natural number y modulo the generator polynomial.
def pow_mod(x: int, y: int) -> int:
	if y < 0:
		raise DomainError("Exponent must be a natural number")
	# Exponentiation by squaring
	z: int = 1
	while y != 0:
		if y & 1 != 0:
			z = multiply_mod(z, x)
		x = multiply_mod(x, x)
		y >>= 1
	return z


# Computes polynomial x divided by polynomial y, returning the quotient and remainder.
def divide_and_remainder(x: int, y: int) -> Tuple[int,int]:
	if y == 0:
		raise DomainError("Division by zero")
	if x == 0:
		return (0, 0)

	y_deg: int = get_degree(y)
	z: int = 0
	for i in range(get_degree(x) - y_deg, -1, -1):
		if (x >> (i + y_deg)) & 1 != 0:
			x ^= y << i
			z |= 1 << i
	return (z, x)


# Returns the reciprocal of polynomial x with respect to the generator polynomial.
def reciprocal_mod(x: int) -> int:
	# Based on a simplification of the extended Euclidean algorithm
	y: int = x
	x = CONST.POLYNOMIAL
	a: int = 0
	b: int = 1
	while y != 0:
		q, r = divide_and_remainder(x, y)
		c = a ^ multiply_mod(q, b)
		x = y
		y = r
		a = b
		b = c
	if x == 1:
		return a
	else:
		raise DomainError("Reciprocal does not exist")


def get_degree(x: int) -> int:
	return x.bit_length() - 1


# ---- Miscellaneous ----

if __name__ == "__main__":
	sys.exit(main())
