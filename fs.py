import struct
from typing import List, Tuple

import attr

from errors import CorruptStructure

EXT2_MAGIC = 0xEF53
GOOD_OLD_INODE_SIZE = 128  # revision 0 images always use 128-byte inodes
MAX_LOG_BLOCK_SIZE = 6  # 1024 << 6 = 64 KiB

SUPERBLOCK_SIZE = 1024
GROUP_DESC_SIZE = 32
DIRENTRY_HEADER_SIZE = 8
N_BLOCK_POINTERS = 15
N_DIRECT_BLOCKS = 12

# Leading part of struct ext2_super_block; the rest of the 1024 bytes is padding here
_SB_FMT = "<IIIIIIIIIIIIIHhHHHHIIIIHHIHH"
_SB_VOLUME_NAME = slice(120, 136)

_GD_FMT = "<IIIHHHH12x"

# i_mode .. osd1, then i_block[15]
_INODE_FMT = "<HHIIIIIHHIII15I"

_DIRENT_FMT = "<IHBB"


def ceil_div(a: int, b: int) -> int:
    return -(-a // b)


@attr.s(auto_attribs=True)
class Superblock:
    inodes_count: int
    blocks_count: int
    r_blocks_count: int
    free_blocks_count: int
    free_inodes_count: int
    first_data_block: int
    log_block_size: int
    blocks_per_group: int
    inodes_per_group: int
    magic: int = EXT2_MAGIC
    state: int = 1
    rev_level: int = 1
    first_ino: int = 11
    inode_size: int = GOOD_OLD_INODE_SIZE
    volume_name: str = ""

    @property
    def block_size(self) -> int:
        return 1024 << self.log_block_size

    @property
    def disk_size(self) -> int:
        return self.blocks_count * self.block_size

    @property
    def inode_record_size(self) -> int:
        if self.rev_level == 0:
            return GOOD_OLD_INODE_SIZE
        return self.inode_size

    @property
    def inodes_per_block(self) -> int:
        return self.block_size // self.inode_record_size

    @property
    def inode_blocks_per_group(self) -> int:
        return self.inodes_per_group // self.inodes_per_block

    @property
    def group_count(self) -> int:
        # Groups must cover every inode, so round up
        return ceil_div(self.inodes_count, self.inodes_per_group)

    def group_block_range(self, group: int) -> Tuple[int, int]:
        """Inclusive range of block ids owned by ``group``; the last group may be short."""
        start = self.first_data_block + group * self.blocks_per_group
        end = min(start + self.blocks_per_group, self.blocks_count) - 1
        return start, end

    def group_inode_range(self, group: int) -> Tuple[int, int]:
        """Inclusive range of (1-based) inode numbers owned by ``group``."""
        start = group * self.inodes_per_group + 1
        end = min(start + self.inodes_per_group - 1, self.inodes_count)
        return start, end

    def validate(self):
        if self.magic != EXT2_MAGIC:
            raise CorruptStructure(f"Bad superblock magic 0x{self.magic:04x}")
        if self.inodes_per_group <= 0:
            raise CorruptStructure("Superblock declares zero inodes per group")
        if self.blocks_per_group <= 0:
            raise CorruptStructure("Superblock declares zero blocks per group")
        if self.log_block_size > MAX_LOG_BLOCK_SIZE:
            raise CorruptStructure(f"Unsupported block size exponent {self.log_block_size}")
        size = self.inode_record_size
        if size < GOOD_OLD_INODE_SIZE or size > self.block_size or size & (size - 1):
            raise CorruptStructure(f"Bad inode record size {size}")

    def pack(self) -> bytes:
        fields = (
            self.inodes_count,
            self.blocks_count,
            self.r_blocks_count,
            self.free_blocks_count,
            self.free_inodes_count,
            self.first_data_block,
            self.log_block_size,
            self.log_block_size,  # s_log_frag_size
            self.blocks_per_group,
            self.blocks_per_group,  # s_frags_per_group
            self.inodes_per_group,
            0, 0,  # s_mtime, s_wtime
            0, -1,  # s_mnt_count, s_max_mnt_count
            self.magic,
            self.state,
            1,  # s_errors: continue
            0,  # s_minor_rev_level
            0, 0, 0,  # s_lastcheck, s_checkinterval, s_creator_os
            self.rev_level,
            0, 0,  # s_def_resuid, s_def_resgid
            self.first_ino,
            self.inode_size,
            0,  # s_block_group_nr
        )
        data = bytearray(SUPERBLOCK_SIZE)
        struct.pack_into(_SB_FMT, data, 0, *fields)
        data[_SB_VOLUME_NAME] = self.volume_name.encode("utf-8")[:16].ljust(16, b"\x00")
        return bytes(data)

    @classmethod
    def unpack(cls, data: bytes) -> "Superblock":
        f = struct.unpack_from(_SB_FMT, data)
        volume_name = data[_SB_VOLUME_NAME].split(b"\x00", 1)[0].decode("utf-8", errors="replace")
        return cls(
            inodes_count=f[0],
            blocks_count=f[1],
            r_blocks_count=f[2],
            free_blocks_count=f[3],
            free_inodes_count=f[4],
            first_data_block=f[5],
            log_block_size=f[6],
            blocks_per_group=f[8],
            inodes_per_group=f[10],
            magic=f[15],
            state=f[16],
            rev_level=f[22],
            first_ino=f[25],
            inode_size=f[26],
            volume_name=volume_name,
        )


@attr.s(auto_attribs=True)
class GroupDesc:
    block_bitmap: int
    inode_bitmap: int
    inode_table: int
    free_blocks_count: int
    free_inodes_count: int
    used_dirs_count: int

    def pack(self) -> bytes:
        return struct.pack(
            _GD_FMT,
            self.block_bitmap,
            self.inode_bitmap,
            self.inode_table,
            self.free_blocks_count,
            self.free_inodes_count,
            self.used_dirs_count,
            0,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "GroupDesc":
        return cls(*struct.unpack(_GD_FMT, data)[:6])


@attr.s(auto_attribs=True)
class BitRun:
    """Inclusive range of free ids found in a bitmap"""
    start: int
    end: int

    def __len__(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        if self.start == self.end:
            return str(self.start)
        return f"{self.start}-{self.end}"


@attr.s(auto_attribs=True)
class Inode:
    mode: int
    uid: int
    size: int
    atime: int
    ctime: int
    mtime: int
    dtime: int
    gid: int
    links_count: int
    blocks: int
    flags: int
    block: List[int] = attr.ib(factory=lambda: [0] * N_BLOCK_POINTERS)

    @property
    def first_block(self) -> int:
        return self.block[0]

    @property
    def direct_blocks(self) -> List[int]:
        return self.block[:N_DIRECT_BLOCKS]

    def pack(self, record_size: int = GOOD_OLD_INODE_SIZE) -> bytes:
        data = struct.pack(
            _INODE_FMT,
            self.mode,
            self.uid,
            self.size,
            self.atime,
            self.ctime,
            self.mtime,
            self.dtime,
            self.gid,
            self.links_count,
            self.blocks,
            self.flags,
            0,  # osd1
            *self.block,
        )
        return data.ljust(record_size, b"\x00")

    @classmethod
    def unpack(cls, data: bytes) -> "Inode":
        fields = struct.unpack_from(_INODE_FMT, data)
        return cls(*fields[:11], block=list(fields[12:]))


@attr.s(auto_attribs=True)
class DirEntry:
    inode: int
    rec_len: int
    name_len: int
    file_type: int
    name: str

    @staticmethod
    def min_rec_len(name_len: int) -> int:
        """Smallest 4-byte aligned record able to hold a name of ``name_len`` bytes"""
        return (DIRENTRY_HEADER_SIZE + name_len + 3) & ~3

    def pack(self) -> bytes:
        name_bytes = self.name.encode("utf-8")
        data = struct.pack(_DIRENT_FMT, self.inode, self.rec_len, len(name_bytes), self.file_type)
        return (data + name_bytes).ljust(self.rec_len, b"\x00")

    @classmethod
    def unpack(cls, header: bytes, name: bytes = b"") -> "DirEntry":
        """Builds an entry from its 8-byte header and the name bytes that follow it"""
        inode, rec_len, name_len, file_type = struct.unpack(_DIRENT_FMT, header[:DIRENTRY_HEADER_SIZE])
        return cls(inode, rec_len, name_len, file_type, name.decode("utf-8", errors="replace"))
