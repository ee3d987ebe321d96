import pytest

from spareparts2xml import (
    ArgumentError,
    LINE_ENDING_ENV,
    OUTPUT_FILENAME,
    convert_file,
    main,
)

HEADER = "LFDNR;ART_ID_ET;DESC_ET;BESTELLNUMMER;BESTELLTEXT;SUCHTEXT"


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv(LINE_ENDING_ENV, raising=False)
    return tmp_path


def test_main_writes_output(workdir, capsys):
    src = workdir / "parts.csv"
    src.write_text(f"{HEADER}\n1;A100;Bolt;B200;Order text;search<term\n2;A101;Nut;B201;;\n", encoding="utf-8")

    assert main([str(src), "--line-ending", "lf"]) == 0

    out = (workdir / OUTPUT_FILENAME).read_bytes().decode("utf-8")
    assert out.startswith('<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n<productList>\n')
    assert "        <articleSearchText><![CDATA[search<term]]></articleSearchText>\n" in out
    assert "        <orderDescription />\n" in out
    assert out.index("<id>1</id>") < out.index("<id>2</id>")
    assert "Wrote 2 products" in capsys.readouterr().out


def test_main_crlf_from_environment(workdir, monkeypatch):
    monkeypatch.setenv(LINE_ENDING_ENV, "crlf")
    src = workdir / "parts.csv"
    src.write_text(f"{HEADER}\n1;A;B;C;D;E\n", encoding="utf-8")

    assert main([str(src)]) == 0

    out = (workdir / OUTPUT_FILENAME).read_bytes()
    assert out.count(b"\n") == out.count(b"\r\n") > 0


def test_main_ansi(workdir):
    src = workdir / "parts.csv"
    src.write_bytes(f"{HEADER}\n1;A;Stra\xdfe;C;D;\xe9\n".encode("cp1252"))

    assert main([str(src), "--ansi", "--line-ending", "lf"]) == 0

    out = (workdir / OUTPUT_FILENAME).read_text(encoding="utf-8")
    assert "<articleDescription>Straße</articleDescription>" in out
    assert "<![CDATA[é]]>" in out


def test_main_rejects_latin_bytes_without_ansi(workdir, capsys):
    src = workdir / "parts.csv"
    src.write_bytes(f"{HEADER}\n1;A;B;C;D;\xe9\n".encode("cp1252"))

    assert main([str(src)]) == 1
    assert "not valid UTF-8" in capsys.readouterr().err
    assert not (workdir / OUTPUT_FILENAME).exists()


def test_main_missing_input(workdir, capsys):
    with pytest.raises(SystemExit) as exc:
        main([str(workdir / "nope.csv")])
    assert exc.value.code == 2
    assert "does not exist" in capsys.readouterr().err
    assert not (workdir / OUTPUT_FILENAME).exists()


def test_main_missing_column(workdir, capsys):
    src = workdir / "parts.csv"
    src.write_text("LFDNR;ART_ID_ET;DESC_ET;BESTELLNUMMER;BESTELLTEXT\n1;A;B;C;D\n", encoding="utf-8")

    assert main([str(src)]) == 1
    assert "SUCHTEXT" in capsys.readouterr().err
    assert not (workdir / OUTPUT_FILENAME).exists()


def test_main_invalid_id(workdir, capsys):
    src = workdir / "parts.csv"
    src.write_text(f"{HEADER}\n1;A;B;C;D;E\nx;A;B;C;D;E\n", encoding="utf-8")

    assert main([str(src)]) == 1
    assert "data row 2" in capsys.readouterr().err
    assert not (workdir / OUTPUT_FILENAME).exists()


def test_main_unknown_line_ending_in_environment(workdir, monkeypatch, capsys):
    monkeypatch.setenv(LINE_ENDING_ENV, "cr")
    src = workdir / "parts.csv"
    src.write_text(f"{HEADER}\n1;A;B;C;D;E\n", encoding="utf-8")

    assert main([str(src)]) == 1
    assert "unknown line ending" in capsys.readouterr().err


def test_convert_file_missing_input(tmp_path):
    output = tmp_path / "out.xml"
    with pytest.raises(ArgumentError):
        convert_file(tmp_path / "nope.csv", output)
    assert not output.exists()


def test_convert_file_custom_output_path(tmp_path):
    src = tmp_path / "parts.csv"
    src.write_text(f"{HEADER}\n1;A;B;C;D;E\n2;A;B;C;D;E\n", encoding="utf-8")
    output = tmp_path / "out.xml"

    assert convert_file(src, output, newline="\n") == 2
    assert output.read_text(encoding="utf-8").endswith("</product>\n</productList>")
