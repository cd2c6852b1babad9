import json

from main import main
from selection import VARIANT_TAGS


def test_random_workflow_run(capsys):
    assert main(["--random-tasks", "12", "--nodes", "4", "--seed", "3"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert [line.split(":")[2] for line in lines] == list(VARIANT_TAGS)
    for line in lines:
        fields = line.split(":")
        assert len(fields) == 8
        assert fields[3] == "cluster-4"
        assert fields[4] == "random-12"


def test_workflow_and_platform_files(tmp_path, capsys):
    dag = tmp_path / "chain.json"
    dag.write_text(json.dumps({
        "tasks": [{"name": "root"}, {"name": "A", "amount": 100.0, "alpha": 0.1},
                  {"name": "B", "amount": 50.0, "alpha": 0.5}, {"name": "end"}],
        "dependencies": [["root", "A"], ["A", "B"], ["B", "end"]],
    }))
    platform = tmp_path / "platform.json"
    platform.write_text(json.dumps({"nodes": 4, "power": 1.0}))
    gantt = tmp_path / "gantt.png"

    code = main(["--dag", str(dag), "--platform", str(platform), "--gantt", str(gantt)])

    assert code == 0
    lines = capsys.readouterr().out.strip().splitlines()
    baseline = lines[-1].split(":")
    assert baseline[2:5] == ["baseline", "platform.json", "chain.json"]
    assert baseline[5] == "63.750"
    assert gantt.exists()


def test_configuration_error_exit_code(tmp_path):
    platform = tmp_path / "platform.json"
    platform.write_text(json.dumps({"nodes": [{"name": "a", "power": 1.0}, {"name": "b", "power": 2.0}]}))
    assert main(["--random-tasks", "5", "--platform", str(platform)]) == 2


def test_communications_run(capsys):
    assert main(["--random-tasks", "10", "--nodes", "3", "--seed", "8", "--with-communications"]) == 0
    assert len(capsys.readouterr().out.strip().splitlines()) == len(VARIANT_TAGS)
