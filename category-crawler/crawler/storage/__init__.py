from crawler.storage.cache import KeyValueStore, MemoryKeyValueStore
from crawler.storage.blob import BlobStore, FileBlobStore, crawl_key
from crawler.storage.db import SQLiteDatabase, retry_on_lock
