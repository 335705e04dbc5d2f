import logging
import os
from typing import BinaryIO, Iterable, Iterator, List, Optional

import attr

from errors import AllocationError, CorruptStructure, OpenError, SeekError, TruncatedRead
from fs import (
    DIRENTRY_HEADER_SIZE,
    GROUP_DESC_SIZE,
    SUPERBLOCK_SIZE,
    BitRun,
    DirEntry,
    GroupDesc,
    Inode,
    Superblock,
)

logger = logging.getLogger(__name__)

# On-disk layout constants
SUPERBLOCK_OFFSET = 1024
ROOT_INODE = 2

# Bitmap scanner states
OUTSIDE = 0
IN_RUN = 1


class ImageSource:
    """Read-only, byte addressable view of an image file.

    Every read goes through :meth:`read_at`, which seeks to an absolute offset
    first. The handle is released when the ``with`` block exits, whatever
    the outcome.
    """

    def __init__(self, image_path: str):
        self.image_path = image_path
        self.image_file: Optional[BinaryIO] = None
        self.size = 0

    def open(self) -> "ImageSource":
        try:
            self.image_file = open(self.image_path, "rb")
            self.size = os.fstat(self.image_file.fileno()).st_size
        except OSError as e:
            raise OpenError(f"Cannot open image {self.image_path}: {e.strerror or e}") from e
        logger.debug("Opened %s (%d bytes)", self.image_path, self.size)
        return self

    def close(self):
        if self.image_file is not None:
            self.image_file.close()
            self.image_file = None

    def __enter__(self) -> "ImageSource":
        return self.open()

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def tell(self) -> int:
        return self.image_file.tell()

    def seek(self, offset: int) -> int:
        # Seeking past the end is allowed; the following read comes up short
        if offset < 0:
            raise SeekError(f"Negative offset {offset}")
        try:
            return self.image_file.seek(offset)
        except (OSError, OverflowError) as e:
            raise SeekError(f"Seek to offset {offset} failed: {e}") from e

    def read_exact(self, size: int, what: str = "data") -> bytes:
        offset = self.tell()
        try:
            data = self.image_file.read(size)
        except MemoryError as e:
            raise AllocationError(f"Cannot allocate {size} bytes for {what}") from e
        if len(data) != size:
            raise TruncatedRead(what, offset, size, len(data))
        return data

    def read_at(self, offset: int, size: int, what: str = "data") -> bytes:
        self.seek(offset)
        return self.read_exact(size, what)

    def read_block(self, block_id: int, block_size: int, what: str = "block") -> bytes:
        return self.read_at(block_id * block_size, block_size, f"{what} (block {block_id})")


def read_superblock(source: ImageSource) -> Superblock:
    data = source.read_at(SUPERBLOCK_OFFSET, SUPERBLOCK_SIZE, "superblock")
    sb = Superblock.unpack(data)
    sb.validate()
    logger.debug(
        "Superblock: %d blocks of %d bytes, %d inodes, %d groups",
        sb.blocks_count, sb.block_size, sb.inodes_count, sb.group_count,
    )
    return sb


def group_table_offset(sb: Superblock) -> int:
    """The descriptor table starts in the block right after the superblock"""
    return (sb.first_data_block + 1) * sb.block_size


def read_group_descriptors(source: ImageSource, sb: Superblock) -> List[GroupDesc]:
    offset = group_table_offset(sb)
    table_size = sb.group_count * GROUP_DESC_SIZE
    if offset + table_size > source.size:
        raise TruncatedRead("group descriptor table", offset, table_size, max(source.size - offset, 0))

    data = source.read_at(offset, table_size, "group descriptor table")
    descriptors = [
        GroupDesc.unpack(data[i : i + GROUP_DESC_SIZE])
        for i in range(0, table_size, GROUP_DESC_SIZE)
    ]
    logger.debug("Read %d group descriptors at offset %d", len(descriptors), offset)
    return descriptors


def iter_bits(data: Iterable[int]) -> Iterator[int]:
    """Yields the bits of ``data`` in order, least significant bit of each byte first"""
    for byte in data:
        for k in range(8):
            yield (byte >> k) & 1


def free_runs(bitmap: bytes, first_id: int = 0, last_id: Optional[int] = None) -> List[BitRun]:
    """
    Collects the maximal runs of zero bits in ``bitmap`` as inclusive id ranges.

    Bit ``i`` is numbered ``first_id + i``. ``last_id`` is the highest id the
    bitmap really describes: a run still open when the bits run out is closed
    there, and nothing past it is reported. It defaults to the id of the last
    bit.
    """
    if last_id is None:
        last_id = first_id + len(bitmap) * 8 - 1

    runs: List[BitRun] = []
    state = OUTSIDE
    start = 0
    for index, bit in enumerate(iter_bits(bitmap)):
        if state == OUTSIDE:
            if bit == 0:
                state = IN_RUN
                start = index + first_id
        elif bit == 1:
            state = OUTSIDE
            runs.append(BitRun(start, index - 1 + first_id))

    if state == IN_RUN:
        runs.append(BitRun(start, last_id))

    # Padding bits past the group's last id are not real units
    clipped = []
    for run in runs:
        if run.start > last_id:
            break
        clipped.append(BitRun(run.start, min(run.end, last_id)))
    return clipped


def format_runs(runs: Iterable[BitRun]) -> str:
    return ", ".join(str(run) for run in runs)


def read_free_runs(
    source: ImageSource,
    block_id: int,
    block_size: int,
    first_id: int = 0,
    last_id: Optional[int] = None,
    what: str = "bitmap",
) -> List[BitRun]:
    bitmap = source.read_block(block_id, block_size, what)
    return free_runs(bitmap, first_id, last_id)


def inode_offset(sb: Superblock, descriptors: List[GroupDesc], inode_num: int) -> int:
    if inode_num < 1 or inode_num > sb.inodes_count:
        raise CorruptStructure(f"Inode {inode_num} is outside 1..{sb.inodes_count}")
    group, index = divmod(inode_num - 1, sb.inodes_per_group)
    return descriptors[group].inode_table * sb.block_size + index * sb.inode_record_size


def read_inode(source: ImageSource, sb: Superblock, descriptors: List[GroupDesc], inode_num: int) -> Inode:
    offset = inode_offset(sb, descriptors, inode_num)
    data = source.read_at(offset, sb.inode_record_size, f"inode {inode_num}")
    inode = Inode.unpack(data)
    logger.debug("Inode %d at offset %d: size=%d first_block=%d", inode_num, offset, inode.size, inode.first_block)
    return inode


def iter_dir_entries(source: ImageSource, inode: Inode, block_size: int) -> Iterator[DirEntry]:
    """
    Walks the entries packed in the first data block of a directory inode.

    Each entry's ``rec_len`` gives the distance to the next one. The walk ends
    once the consumed length reaches the directory size, which is capped at
    one block.
    """
    block_start = inode.first_block * block_size
    limit = inode.size
    if limit > block_size:
        logger.warning("Directory is %d bytes; only its first block is walked", limit)
        limit = block_size

    offset = block_start
    while offset - block_start < limit:
        header = source.read_at(offset, DIRENTRY_HEADER_SIZE, "directory entry header")
        entry = DirEntry.unpack(header)
        rec_len, name_len = entry.rec_len, entry.name_len

        if rec_len < DIRENTRY_HEADER_SIZE:
            raise CorruptStructure(f"Directory entry at offset {offset} has rec_len {rec_len}")
        if offset - block_start + rec_len > limit:
            raise CorruptStructure(
                f"Directory entry at offset {offset} with rec_len {rec_len} runs past the directory end"
            )
        if DIRENTRY_HEADER_SIZE + name_len > rec_len:
            raise CorruptStructure(
                f"Directory entry at offset {offset}: name of {name_len} bytes does not fit rec_len {rec_len}"
            )

        name = source.read_exact(name_len, "directory entry name")
        yield DirEntry.unpack(header, name)
        offset += rec_len


@attr.s(auto_attribs=True)
class GroupReport:
    number: int
    descriptor: GroupDesc
    block_range: tuple
    inode_range: tuple
    free_blocks: List[BitRun]
    free_inodes: List[BitRun]


@attr.s(auto_attribs=True)
class Analysis:
    image_path: str
    superblock: Superblock
    groups: List[GroupReport]
    root_inode: Inode
    root_entries: List[DirEntry]


def _check_free_count(kind: str, group: int, runs: List[BitRun], declared: int):
    found = sum(len(run) for run in runs)
    if found != declared:
        logger.warning(
            "Group %d: %s bitmap has %d free ids, descriptor says %d", group, kind, found, declared
        )


def analyze_group(source: ImageSource, sb: Superblock, number: int, gd: GroupDesc) -> GroupReport:
    block_range = sb.group_block_range(number)
    if block_range[0] > block_range[1]:
        raise CorruptStructure(
            f"Group {number} starts at block {block_range[0]}, past the last block {sb.blocks_count - 1}"
        )
    inode_range = sb.group_inode_range(number)

    free_blocks = read_free_runs(
        source, gd.block_bitmap, sb.block_size, block_range[0], block_range[1], "block bitmap"
    )
    _check_free_count("block", number, free_blocks, gd.free_blocks_count)

    free_inodes = read_free_runs(
        source, gd.inode_bitmap, sb.block_size, inode_range[0], inode_range[1], "inode bitmap"
    )
    _check_free_count("inode", number, free_inodes, gd.free_inodes_count)

    return GroupReport(number, gd, block_range, inode_range, free_blocks, free_inodes)


def analyze_source(source: ImageSource) -> Analysis:
    sb = read_superblock(source)
    descriptors = read_group_descriptors(source, sb)
    groups = [analyze_group(source, sb, i, gd) for i, gd in enumerate(descriptors)]
    root_inode = read_inode(source, sb, descriptors, ROOT_INODE)
    root_entries = list(iter_dir_entries(source, root_inode, sb.block_size))
    return Analysis(source.image_path, sb, groups, root_inode, root_entries)


def analyze(image_path: str) -> Analysis:
    """Runs the full analysis of ``image_path``; any failure raises an AnalysisError"""
    try:
        with ImageSource(image_path) as source:
            return analyze_source(source)
    except MemoryError as e:
        raise AllocationError(f"Out of memory while analysing {image_path}") from e
