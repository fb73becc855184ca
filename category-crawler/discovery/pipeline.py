from crawler.core import setup_logger

logger = setup_logger("crawler.discovery.pipeline")


class PageProcessor:
    """
    Parse hand-off for a successfully fetched page.

    FLOW: Load staged HTML -> parse metadata -> store content hash -> index once ->
    extract links -> link discovery -> delete the staged blob.
    A page without a title is still mined for links; indexer errors never block discovery.
    """

    def __init__(self, blobs, parser, indexer, urls, discovery):
        self._blobs = blobs
        self._parser = parser
        self._indexer = indexer
        self._urls = urls
        self._discovery = discovery

    def process(self, job, url_record, storage_key: str) -> int:
        """Returns the number of links admitted to the frontier."""
        try:
            content = self._blobs.get(storage_key)
        except KeyError:
            logger.error(f"[PARSE] Staged page missing url={job.url} key={storage_key}")
            return 0

        try:
            page = self._parser.parse(content, url_record.normalized_url)
            if page is None:
                logger.warning(f"[PARSE] No title found url={url_record.normalized_url} category={job.category}")
            else:
                self._urls.set_content_hash(url_record.url_hash, page.content_hash)
                try:
                    self._indexer.index(url_record, page.title, page.description, content)
                except Exception as e:
                    logger.error(f"[PARSE] Indexer failed url={url_record.normalized_url} error={e}", exc_info=True)

            links = self._parser.extract_links(content, url_record.normalized_url)
            return self._discovery.discover(url_record, job.category, links)
        finally:
            self._blobs.delete(storage_key)
