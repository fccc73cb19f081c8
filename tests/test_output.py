from collabexec.runner.output import BoundedOutput


def test_keeps_everything_under_the_cap():
    out = BoundedOutput(max_lines=5)
    out.feed(b"one\ntwo\n")
    out.feed("three")
    assert out.text() == "one\ntwo\nthree"
    assert out.line_count == 3
    assert out.truncated is False


def test_chunks_split_mid_line_are_joined():
    out = BoundedOutput(max_lines=10)
    for chunk in (b"hel", b"lo wo", b"rld\nbye\n"):
        out.feed(chunk)
    assert out.text() == "hello world\nbye"


def test_oldest_lines_are_dropped():
    out = BoundedOutput(max_lines=3)
    out.feed("".join(f"line {i}\n" for i in range(10)))
    assert out.text() == "line 7\nline 8\nline 9"
    assert out.truncated is True


def test_pending_tail_counts_against_the_cap():
    out = BoundedOutput(max_lines=2)
    out.feed("a\nb\nc")
    assert out.text() == "b\nc"
    assert out.truncated is True


def test_newline_free_flood_is_split():
    out = BoundedOutput(max_lines=3, max_line_chars=4)
    out.feed("x" * 20)
    assert out.text() == "xxxx\nxxxx\nxxxx"
    assert out.truncated is True


def test_invalid_utf8_is_replaced():
    out = BoundedOutput()
    out.feed(b"ok \xff\n")
    assert out.text() == "ok \ufffd"
