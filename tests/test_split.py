import pytest

from poissonrec.src.split import KeyIndex, RatingEntry, RatingSplit, random_split


def _rows():
    return [
        {"user_id": user, "item_id": item, "rating": float(rating)}
        for user, item, rating in [
            ("u2", "i1", 1),
            ("u1", "i3", 4),
            ("u3", "i2", 2),
            ("u1", "i1", 5),
            ("u2", "i2", 1),
            ("u3", "i3", 3),
            ("u1", "i2", 2),
            ("u2", "i3", 1),
            ("u3", "i1", 2),
            ("u4", "i1", 1),
        ]
    ]


def test_key_index_round_trip():
    index = KeyIndex.from_keys(["b", "a", "c", "a"])
    assert index.keys == ("a", "b", "c")
    assert index.size == 3
    assert len(index) == 3
    assert index.index_of("c") == 2
    assert index.key_of(1) == "b"
    assert "a" in index and "z" not in index
    with pytest.raises(KeyError):
        index.index_of("z")


def test_key_index_rejects_duplicates():
    with pytest.raises(ValueError):
        KeyIndex(("a", "a"))


def test_from_triples_infers_counts():
    split = RatingSplit.from_triples([(0, 1, 2.0)], [(3, 0, 1.0)])
    assert split.user_count == 4
    assert split.item_count == 2
    assert split.train == [RatingEntry(0, 1, 2.0)]
    assert split.user_index.key_of(3) == 3


def test_random_split_is_deterministic_and_complete():
    rows = _rows()
    first = random_split(rows, validation_frac=0.3, seed=5)
    second = random_split(rows, validation_frac=0.3, seed=5)
    assert first.train == second.train
    assert first.validation == second.validation
    assert len(first.validation) == 3
    assert len(first.train) + len(first.validation) == len(rows)
    assert first.user_index.keys == ("u1", "u2", "u3", "u4")
    assert first.item_index.keys == ("i1", "i2", "i3")
    first.validate()


def test_random_split_maps_ids_to_indices():
    split = random_split(_rows(), validation_frac=0.2, seed=1)
    entries = split.train + split.validation
    assert RatingEntry(split.user_index.index_of("u1"), split.item_index.index_of("i3"), 4.0) in entries


@pytest.mark.parametrize("frac", [0.0, 1.0, -0.1])
def test_random_split_rejects_bad_fraction(frac):
    with pytest.raises(ValueError):
        random_split(_rows(), validation_frac=frac)


def test_random_split_rejects_empty_rows():
    with pytest.raises(ValueError):
        random_split([], validation_frac=0.1)
