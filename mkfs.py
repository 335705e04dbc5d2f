import sys
from typing import List, Sequence

from fs import (
    GOOD_OLD_INODE_SIZE,
    DirEntry,
    GroupDesc,
    Inode,
    Superblock,
    ceil_div,
)
from fsapi import ROOT_INODE, SUPERBLOCK_OFFSET, group_table_offset

FIRST_INO = 11  # first non-reserved inode, used for lost+found
FT_REG_FILE = 1
FT_DIR = 2
S_IFDIR = 0o040000
S_IFREG = 0o100000


def create_empty_image(image_path: str, size_bytes: int):
    """Create an empty image file"""
    with open(image_path, "wb") as f:
        f.truncate(size_bytes)


def set_bit(bitmap: bytearray, index: int):
    bitmap[index // 8] |= 1 << (index % 8)


def mkfs(
    image_path: str,
    blocks_count: int = 2048,
    block_size: int = 1024,
    blocks_per_group: int = 0,
    inodes_per_group: int = 128,
    inode_size: int = GOOD_OLD_INODE_SIZE,
    files: Sequence[str] = (),
    volume_name: str = "",
) -> Superblock:
    """
    Write a minimal ext2 image: one descriptor table block, per-group bitmaps
    and inode tables, a root directory holding ``.``, ``..``, ``lost+found``
    and one empty regular file per name in ``files``.
    """
    log_block_size = (block_size // 1024).bit_length() - 1
    if 1024 << log_block_size != block_size:
        raise ValueError(f"Block size {block_size} is not a power of two >= 1024")
    if not blocks_per_group:
        blocks_per_group = block_size * 8

    first_data_block = 1 if block_size == 1024 else 0
    num_groups = ceil_div(blocks_count - first_data_block, blocks_per_group)
    if num_groups * 32 > block_size:
        raise ValueError("Descriptor table does not fit in one block")

    sb = Superblock(
        inodes_count=num_groups * inodes_per_group,
        blocks_count=blocks_count,
        r_blocks_count=0,
        free_blocks_count=0,
        free_inodes_count=0,
        first_data_block=first_data_block,
        log_block_size=log_block_size,
        blocks_per_group=blocks_per_group,
        inodes_per_group=inodes_per_group,
        first_ino=FIRST_INO,
        inode_size=inode_size,
        volume_name=volume_name,
    )

    create_empty_image(image_path, blocks_count * block_size)
    with open(image_path, "r+b") as f:
        descriptors, block_bitmaps, inode_bitmaps = create_block_groups(sb)
        create_root_directory(f, sb, descriptors, block_bitmaps, inode_bitmaps, files)

        for gd, block_bitmap, inode_bitmap, number in zip(
            descriptors, block_bitmaps, inode_bitmaps, range(num_groups)
        ):
            gd.free_blocks_count = count_free(block_bitmap, sb.group_block_range(number))
            gd.free_inodes_count = count_free(inode_bitmap, sb.group_inode_range(number))
            f.seek(gd.block_bitmap * block_size)
            f.write(block_bitmap)
            f.seek(gd.inode_bitmap * block_size)
            f.write(inode_bitmap)

        sb.free_blocks_count = sum(gd.free_blocks_count for gd in descriptors)
        sb.free_inodes_count = sum(gd.free_inodes_count for gd in descriptors)

        f.seek(group_table_offset(sb))
        for gd in descriptors:
            f.write(gd.pack())

        f.seek(SUPERBLOCK_OFFSET)
        f.write(sb.pack())

    return sb


def count_free(bitmap: bytearray, id_range) -> int:
    first, last = id_range
    return sum(
        1 for i in range(last - first + 1) if not bitmap[i // 8] & (1 << (i % 8))
    )


def create_block_groups(sb: Superblock):
    """Lay out bitmaps and inode tables; returns descriptors and the in-memory bitmaps"""
    block_size = sb.block_size
    inode_table_blocks = ceil_div(sb.inodes_per_group * sb.inode_record_size, block_size)

    descriptors: List[GroupDesc] = []
    block_bitmaps: List[bytearray] = []
    inode_bitmaps: List[bytearray] = []

    for group_num in range(sb.group_count):
        group_start, group_end = sb.group_block_range(group_num)
        if group_num == 0:
            # superblock and descriptor table come first
            block_bitmap_block = group_start + 2
        else:
            block_bitmap_block = group_start
        inode_bitmap_block = block_bitmap_block + 1
        inode_table_block = block_bitmap_block + 2

        metadata_end = inode_table_block + inode_table_blocks
        if metadata_end > group_end + 1:
            raise ValueError(f"Group {group_num} is too small for its metadata")

        block_bitmap = bytearray(block_size)
        for block in range(group_start, metadata_end):
            set_bit(block_bitmap, block - group_start)
        # bits past the end of a short group are padding
        for index in range(group_end - group_start + 1, block_size * 8):
            set_bit(block_bitmap, index)

        inode_bitmap = bytearray(block_size)
        for index in range(sb.inodes_per_group, block_size * 8):
            set_bit(inode_bitmap, index)

        descriptors.append(
            GroupDesc(
                block_bitmap=block_bitmap_block,
                inode_bitmap=inode_bitmap_block,
                inode_table=inode_table_block,
                free_blocks_count=0,
                free_inodes_count=0,
                used_dirs_count=0,
            )
        )
        block_bitmaps.append(block_bitmap)
        inode_bitmaps.append(inode_bitmap)

    return descriptors, block_bitmaps, inode_bitmaps


def write_inode(f, sb: Superblock, descriptors: List[GroupDesc], inode_num: int, inode: Inode):
    group, index = divmod(inode_num - 1, sb.inodes_per_group)
    f.seek(descriptors[group].inode_table * sb.block_size + index * sb.inode_record_size)
    f.write(inode.pack(sb.inode_record_size))


def dir_block(entries: List[DirEntry], block_size: int) -> bytes:
    """Pack entries back to back, stretching the last one to the block end"""
    used = sum(entry.rec_len for entry in entries[:-1])
    entries[-1].rec_len = block_size - used
    data = b"".join(entry.pack() for entry in entries)
    if len(data) != block_size:
        raise ValueError("Directory entries do not fit in one block")
    return data


def create_root_directory(f, sb, descriptors, block_bitmaps, inode_bitmaps, files: Sequence[str]):
    """Create the root directory (inode #2) and lost+found (inode #11) in group 0"""
    if FIRST_INO + len(files) > sb.inodes_per_group:
        raise ValueError("Too many files for group 0")

    block_size = sb.block_size
    group_start, _ = sb.group_block_range(0)
    inode_table_blocks = ceil_div(sb.inodes_per_group * sb.inode_record_size, block_size)
    root_block = descriptors[0].inode_table + inode_table_blocks
    lost_found_block = root_block + 1
    for block in (root_block, lost_found_block):
        set_bit(block_bitmaps[0], block - group_start)

    # reserved inodes 1..10, lost+found and the files
    for inode_num in range(1, FIRST_INO + len(files) + 1):
        set_bit(inode_bitmaps[0], inode_num - 1)

    def entry(inode_num, name, file_type):
        name_len = len(name.encode("utf-8"))
        return DirEntry(inode_num, DirEntry.min_rec_len(name_len), name_len, file_type, name)

    root_entries = [
        entry(ROOT_INODE, ".", FT_DIR),
        entry(ROOT_INODE, "..", FT_DIR),
        entry(FIRST_INO, "lost+found", FT_DIR),
    ]
    for i, name in enumerate(files):
        root_entries.append(entry(FIRST_INO + 1 + i, name, FT_REG_FILE))

    f.seek(root_block * block_size)
    f.write(dir_block(root_entries, block_size))
    f.seek(lost_found_block * block_size)
    f.write(dir_block([entry(FIRST_INO, ".", FT_DIR), entry(ROOT_INODE, "..", FT_DIR)], block_size))

    sectors = block_size // 512
    root_inode = Inode(
        mode=S_IFDIR | 0o755, uid=0, size=block_size, atime=0, ctime=0, mtime=0, dtime=0,
        gid=0, links_count=3, blocks=sectors, flags=0,
    )
    root_inode.block[0] = root_block
    write_inode(f, sb, descriptors, ROOT_INODE, root_inode)

    lost_found = Inode(
        mode=S_IFDIR | 0o700, uid=0, size=block_size, atime=0, ctime=0, mtime=0, dtime=0,
        gid=0, links_count=2, blocks=sectors, flags=0,
    )
    lost_found.block[0] = lost_found_block
    write_inode(f, sb, descriptors, FIRST_INO, lost_found)

    for i in range(len(files)):
        empty_file = Inode(
            mode=S_IFREG | 0o644, uid=0, size=0, atime=0, ctime=0, mtime=0, dtime=0,
            gid=0, links_count=1, blocks=0, flags=0,
        )
        write_inode(f, sb, descriptors, FIRST_INO + 1 + i, empty_file)

    descriptors[0].used_dirs_count = 2


def main():
    image_path = sys.argv[1] if len(sys.argv) > 1 else "fs.img"
    mkfs(image_path, files=sys.argv[2:])


if __name__ == "__main__":
    main()
