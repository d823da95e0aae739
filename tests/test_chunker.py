from preik.services.chunker import calculate_checksum, split_into_chunks


def test_short_paragraphs_are_packed_together():
    chunks = split_into_chunks("Første avsnitt.\n\nAndre avsnitt.\n\n\nTredje avsnitt.")
    assert chunks == ["Første avsnitt.\n\nAndre avsnitt.\n\nTredje avsnitt."]


def test_paragraphs_split_at_chunk_size():
    a = "a" * 600
    b = "b" * 600
    chunks = split_into_chunks(f"{a}\n\n{b}")
    assert chunks == [a, b]


def test_oversized_paragraph_falls_back_to_words():
    words = " ".join(["ord"] * 600)  # ~2400 chars, one paragraph
    chunks = split_into_chunks(words)
    assert len(chunks) > 1
    assert all(len(c) <= 1000 for c in chunks)
    assert " ".join(chunks).split() == words.split()


def test_single_word_longer_than_chunk_is_kept_whole():
    word = "x" * 1500
    assert split_into_chunks(word) == [word]


def test_empty_and_whitespace_text_yield_no_chunks():
    assert split_into_chunks("") == []
    assert split_into_chunks("   \n\n  ") == []


def test_checksum_is_stable_sha256():
    assert calculate_checksum("hei") == calculate_checksum("hei")
    assert calculate_checksum("hei") != calculate_checksum("hei ")
    assert len(calculate_checksum("")) == 64
