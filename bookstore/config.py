PAGE_SIZE = 65536             # bytes per page of the persistent store
BUCKET_SIZE_IN_PAGES = 128    # pages handed to a region at a time
MAX_NUM_MEMORIES = 255        # region ids 0..254
MAX_NUM_BUCKETS = 32768
FRAME_CAPACITY = 16           # how many pages the bufferpool keeps in memory
DATA_PATH = "./data"          # directory holding the store file
STORE_FILENAME = "stable_memory.bin"

# Region assignment is part of the on-disk layout, never renumber
COUNTER_MEMORY_ID = 0
BOOKS_MEMORY_ID = 1

BOOK_MAX_SIZE = 1024          # encoded Book bound
BTREE_B = 6                   # nodes hold between B-1 and 2B-1 entries
