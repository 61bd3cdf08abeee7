from codehealth.drift import run_drift_checks

GOLDEN_LOCK = """\
GEM
  remote: https://rubygems.org/
  specs:
    rails (7.1.3)
      actionpack (= 7.1.3)
    tailwindcss-rails (2.3.0)
"""


def _write(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)


def test_missing_deploy_config_is_critical(tmp_path):
    app_path = tmp_path / "billing"
    app_path.mkdir()
    issues = run_drift_checks("billing", str(app_path), str(tmp_path / "golden"))
    assert [(issue.severity, issue.file_path) for issue in issues] == [("critical", "config/deploy.rb")]


def test_drift_against_golden(tmp_path):
    golden = tmp_path / "golden_deployment"
    app_path = tmp_path / "billing"
    _write(golden / "Gemfile.lock", GOLDEN_LOCK)
    _write(app_path / "Gemfile.lock", GOLDEN_LOCK.replace("rails (7.1.3)", "rails (7.0.8)"))
    _write(app_path / "config" / "deploy.rb", "set :repo_url, 'git@example.com:billing.git'\n")
    _write(app_path / "config" / "environments" / "production.rb", "config.assets.compile = false\n")

    issues = run_drift_checks("billing", str(app_path), str(golden))
    by_message = {issue.message: issue.severity for issue in issues}
    assert by_message["Deployment config missing :application setting"] == "high"
    assert by_message["Rails version (7.0.8) differs from golden deployment (7.1.3)"] == "medium"
    assert by_message["Tailwind CSS build task may not be configured for deployment"] == "medium"
    assert any(severity == "high" and "relative_url_root" in message for message, severity in by_message.items())
    assert {issue.scan_type for issue in issues} == {"drift"}


def test_matching_app_has_no_drift(tmp_path):
    golden = tmp_path / "golden_deployment"
    app_path = tmp_path / "billing"
    _write(golden / "Gemfile.lock", GOLDEN_LOCK)
    _write(app_path / "Gemfile.lock", GOLDEN_LOCK)
    _write(app_path / "config" / "deploy.rb", "set :application, 'billing'\n")
    _write(
        app_path / "config" / "environments" / "production.rb",
        "config.relative_url_root = '/billing'\n# bin/rails tailwindcss:build\n",
    )
    assert run_drift_checks("billing", str(app_path), str(golden)) == []


def test_failing_check_does_not_stop_others(tmp_path, caplog):
    app_path = tmp_path / "billing"
    _write(app_path / "config" / "deploy.rb", "set :application, 'billing'\n")
    # a directory where a file is expected makes read_text fail
    (app_path / "config" / "environments" / "production.rb").mkdir(parents=True)
    issues = run_drift_checks("billing", str(app_path), str(tmp_path / "golden"))
    assert issues == []
    assert "failed for billing" in caplog.text
