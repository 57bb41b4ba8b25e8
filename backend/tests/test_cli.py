from vidgif.cli import main, parse_args


def test_defaults(input_video):
    request, quiet = parse_args([str(input_video)])
    assert request.output == str(input_video.with_suffix(".gif"))
    assert (request.width, request.fps, request.loop, request.overwrite) == (480, 15, 0, False)
    assert not quiet


def test_convert(fake_engine, input_video, tmp_path, capsys):
    out = tmp_path / "gifs" / "x.gif"
    code = main([str(input_video), str(out), "--width", "200", "--fps", "8", "--start", "2", "--duration", "1", "--loop", "1"])
    assert code == 0
    assert out.exists()
    captured = capsys.readouterr()
    assert f"GIF written: {out}" in captured.out
    assert "100%" in captured.err


def test_help(capsys):
    assert main(["--help"]) == 0
    assert "--overwrite" in capsys.readouterr().out


def test_bad_width(capsys):
    assert main(["in.mp4", "--width", "0"]) == 1
    err = capsys.readouterr().err
    assert "integer > 0" in err
    assert "Use --help" in err


def test_bad_loop(capsys):
    assert main(["in.mp4", "--loop", "2"]) == 1


def test_missing_input(fake_engine, tmp_path, capsys):
    assert main([str(tmp_path / "nope.mp4"), "-q"]) == 1
    assert "Input file not found" in capsys.readouterr().err


def test_existing_output(fake_engine, input_video, tmp_path, capsys):
    out = tmp_path / "x.gif"
    out.write_bytes(b"old")
    assert main([str(input_video), str(out), "-q"]) == 1
    assert "already exists" in capsys.readouterr().err
    assert main([str(input_video), str(out), "-q", "--overwrite"]) == 0
    assert out.read_bytes() != b"old"
