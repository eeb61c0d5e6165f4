import kcache.logger as logger


def test_summarize_matching_length():
    assert logger.summarize("abc", max_length=3) == "abc"


def test_summarize_exceeding_length():
    assert logger.summarize("abcdef", max_length=5) == "ab..."


def test_summarize_list():
    x = [1, 2, 3, 4, 5]
    assert logger.summarize(x, max_length=6) == "[1,..."


def test_describe_namespaced():
    assert logger.describe("team", "kernel") == "team/kernel"


def test_describe_cluster_scoped():
    assert logger.describe("", "kernel") == "<cluster>/kernel"


def test_describe_digest_truncated():
    digest = "sha256:" + "a" * 64

    description = logger.describe("", "kernel", digest)

    assert description.startswith("<cluster>/kernel@sha256:aaa")
    assert description.endswith("...")
    assert len(description) == len("<cluster>/kernel@") + 24
