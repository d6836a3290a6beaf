from .markdown_chunker import MarkdownChunker, chunk_document, split_front_matter

__all__ = ["MarkdownChunker", "chunk_document", "split_front_matter"]
