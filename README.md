# memvid

Semantic retrieval over text chunks that are stored in video frames: a vector
index, a chunk index that maps frames to chunks, and a local cache for
embedding-model files.

## Modules

- `memvid.search`: `VectorSearchIndex`, a flat vector index with
  `search_exact` and `search_approximate`, `build`, `save`/`load`, `stats`
  and `clear`. Distances come from `DistanceMetric` (`COSINE`, `EUCLIDEAN`,
  `MANHATTAN`, `DOT_PRODUCT`), chosen through `SearchConfig`. Results are
  `SearchResult` records (`id`, `distance`, `metadata`). The module also
  provides the plain functions `cosine_distance`, `euclidean_distance`,
  `manhattan_distance`, `dot_product` and `compute_distance`.
- `memvid.index`: `IndexManager` stores chunk text, frame numbers and
  JSON metadata next to their embeddings. It maps frames to chunks and chunks
  to frames, builds context windows over neighbouring frames, reports
  `IndexStats`, and saves to or loads from a directory.
- `memvid.enhanced`: `EnhancedIndexManager` extends `IndexManager` with
  importance scores and tags per chunk. It adds a configurable context window
  (`ContextWindowConfig`), search filtered by tags and importance
  (`search_enhanced`), lookup by tag, bulk importance updates, and statistics
  with tag counts and a creation-time range. `add_chunks_parallel` adds
  chunks in batches of 100. It retries each insert up to three times and
  counts failures in the returned `ProcessingStats` instead of stopping.
- `memvid.index_types`: the records these use. They are `ChunkMetadata`
  (with `to_dict`/`from_dict`), `ContextWindowConfig`, `RelevanceInfo`,
  `EnhancedSearchResult`, `ProcessingStats`, `IndexStats` and `Reference`.
  Typed metadata values (text, numbers, booleans, lists, objects, timestamps
  and references) convert to and from tagged JSON with `metadata_to_json`
  and `metadata_from_json`.
- `memvid.models`: `ModelManager` keeps a registry of models. The defaults
  are `all-MiniLM-L6-v2` (also under
  `sentence-transformers/all-MiniLM-L6-v2`) and `bert-base-uncased`.
  `download_model` fetches `config.json`, `tokenizer.json`,
  `tokenizer_config.json`, `model.safetensors` and `vocab.txt` from a model
  hub into a cache directory. It skips files that are already present. The
  cache directory defaults to `$HOME/.cache/memvid/models`, and the hub
  `endpoint` can be changed.

## Install

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from memvid.index import IndexManager

manager = IndexManager(3, None)
manager.add_chunks(
    ["Hello world", "Test chunk", "Another test"],
    [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]],
    [0, 1, 2],
)
manager.build()

results = manager.search([0.9, 0.1, 0.0], 2)
print(results[0].id)                           # 0
print(manager.get_chunks_by_frame(0)[0].text)  # Hello world

manager.save("my_index")
loaded = IndexManager.load("my_index")
print(loaded.chunk_count())                    # 3
```

With importance scores and tags:

```python
from memvid.enhanced import EnhancedIndexManager

manager = EnhancedIndexManager(3, None)
ids, stats = manager.add_chunks_parallel(
    ["Machine learning content", "Video processing info"],
    [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]],
    [0, 1],
    [0.9, 0.3],
    [["ml"], ["video"]],
)
hits = manager.search_enhanced([1.0, 0.0, 0.0], 1, None, None, 0.5)
print(hits[0].result.id, hits[0].relevance_info.importance_factor)  # 0 0.9
```

## Behaviour notes

- Lower distances are closer. The dot-product metric uses the negated dot
  product.
- Exact search skips vector slots that are all zeros.
- Until `build` has been called, approximate search uses exact search. After
  `build`, it returns the exact results with a small id-dependent adjustment
  to each distance.
- Text lengths in `ChunkMetadata.length` are counted in UTF-8 bytes.
- Errors raise `memvid.search.MachineLearningError`. Examples are a vector
  of the wrong dimension, mismatched input lengths, an importance score
  outside `[0.0, 1.0]`, an unknown chunk or model, and unreadable saved
  files.

## What this package does not do

- It does not compute embeddings. `ModelManager` only downloads and caches
  model files. You must supply the vectors yourself.
- It does not encode text into QR codes or video, and does not read it back.
- It has no command-line interface.