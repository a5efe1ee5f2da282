"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction from PDF, DOCX, Markdown, HTML and plain text
- Document chunking with overlap
- Embedding generation with batching and caching
- FAISS vector storage
- Retrieval with query expansion, hybrid ranking and re-ranking
- Grounded answer generation
"""
