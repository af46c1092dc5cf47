import tapedbg


def test_public_exports():
    for name in tapedbg.__all__:
        assert hasattr(tapedbg, name), name
    assert tapedbg.__version__ == "0.1.0"
