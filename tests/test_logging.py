import threading

from resforge.logging import BuildLog, get_logger, get_metrics, setup_logging


def test_level_metrics_count_every_record_across_threads():
    setup_logging({"level": "WARNING", "color": False})
    log = get_logger("metrics")
    before = get_metrics()["WARNING"]

    def emit():
        for i in range(50):
            log.warning("worker message %d", i)

    threads = [threading.Thread(target=emit) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert get_metrics()["WARNING"] - before == 400


def test_build_log_keeps_tail(tmp_path):
    with BuildLog(tmp_path / "logs" / "build.x.log", keep_lines=2) as blog:
        for line in ("one\n", "two\n", "three"):
            blog.write(line)
        assert blog.tail() == "two\nthree"
    assert (tmp_path / "logs" / "build.x.log").read_text() == "one\ntwo\nthree\n"
