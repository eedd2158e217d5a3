import os
import subprocess

import pytest

import ADHost
from ADHost import psQuote, buildPromotionCommand, promoteDC, unblockFiles, iterFiles, ZONE_IDENTIFIER

class FakePowerShell:
	"""Replaces subprocess.run; answers the DomainRole query, then every other script."""

	def __init__(self, role = 3, returncode = 0, stderr = ""):
		self.role = role
		self.returncode = returncode
		self.stderr = stderr
		self.calls = []

	def __call__(self, args, capture_output = False, text = False, env = None):
		script = args[-1]
		self.calls.append((script, env))
		if "DomainRole" in script:
			return subprocess.CompletedProcess(args, 0, stdout = f"{self.role}\n", stderr = "")
		return subprocess.CompletedProcess(args, self.returncode, stdout = "Operation completed\n", stderr = self.stderr)

def test_ps_quote():
	assert psQuote("corp.local") == "'corp.local'"
	assert psQuote("O'Brien") == "'O''Brien'"

def test_forest_promotion_command():
	script = buildPromotionCommand("forest", "corp.local", netbios = "CORP", reboot = False)
	assert "Install-WindowsFeature -Name AD-Domain-Services" in script
	assert "Install-ADDSForest -DomainName 'corp.local' -DomainNetbiosName 'CORP' -ForestMode 'WinThreshold'" in script
	assert "-SafeModeAdministratorPassword $dsrm" in script
	assert "-NoRebootOnCompletion" in script
	assert script.endswith("-Force")

def test_replica_promotion_command():
	script = buildPromotionCommand("replica", "corp.local", siteName = "Paris", databasePath = "D:\\NTDS", installFeature = False)
	assert "Install-WindowsFeature" not in script
	assert "Install-ADDSDomainController -DomainName 'corp.local' -Credential $cred -SiteName 'Paris'" in script
	assert "-DatabasePath 'D:\\NTDS'" in script
	assert "-NoRebootOnCompletion" not in script

def test_unknown_promotion_mode():
	with pytest.raises(ValueError):
		buildPromotionCommand("child", "corp.local")

def test_promote_keeps_secrets_off_the_command_line(monkeypatch):
	powershell = FakePowerShell(role = 2)
	monkeypatch.setattr(ADHost.subprocess, "run", powershell)
	summary = promoteDC("corp.local", "Dsrm-S3cret!", netbios = "CORP")
	assert summary["created"] == 1
	script, env = powershell.calls[-1]
	assert "Install-ADDSForest" in script
	assert "Dsrm-S3cret!" not in script
	assert env["ADPROV_DSRM_PASSWORD"] == "Dsrm-S3cret!"

def test_promote_already_domain_controller(monkeypatch):
	powershell = FakePowerShell(role = 5)
	monkeypatch.setattr(ADHost.subprocess, "run", powershell)
	summary = promoteDC("corp.local", "Dsrm-S3cret!")
	assert summary["existing"] == 1
	assert len(powershell.calls) == 1

def test_promote_what_if(monkeypatch):
	powershell = FakePowerShell(role = 3)
	monkeypatch.setattr(ADHost.subprocess, "run", powershell)
	summary = promoteDC("corp.local", "Dsrm-S3cret!", whatIf = True)
	assert summary["created"] == 1
	assert len(powershell.calls) == 1

def test_promote_failure_is_recorded(monkeypatch):
	monkeypatch.setattr(ADHost.subprocess, "run", FakePowerShell(role = 3, returncode = 1, stderr = "Prerequisites check failed"))
	summary = promoteDC("corp.local", "Dsrm-S3cret!")
	assert summary["failed"] == 1
	assert summary["created"] == 0

def test_replica_promotion_requires_credentials(monkeypatch):
	powershell = FakePowerShell(role = 3)
	monkeypatch.setattr(ADHost.subprocess, "run", powershell)
	summary = promoteDC("corp.local", "Dsrm-S3cret!", mode = "replica")
	assert summary["failed"] == 1
	assert len(powershell.calls) == 1

def test_powershell_missing(monkeypatch):
	def missing(*args, **kwargs):
		raise FileNotFoundError(2, "No such file or directory", "powershell.exe")
	monkeypatch.setattr(ADHost.subprocess, "run", missing)
	summary = promoteDC("corp.local", "Dsrm-S3cret!")
	assert summary["failed"] == 1

def blockedTree(tmp_path):
	(tmp_path / "setup.ps1").write_text("Write-Host setup")
	(tmp_path / ("setup.ps1" + ZONE_IDENTIFIER)).write_text("[ZoneTransfer]\nZoneId=3\n")
	(tmp_path / "tools").mkdir()
	(tmp_path / "tools" / "readme.txt").write_text("local file")
	return tmp_path

def test_iter_files_skips_markers(tmp_path):
	files = list(iterFiles(str(blockedTree(tmp_path))))
	assert sorted(os.path.basename(f) for f in files) == ["readme.txt", "setup.ps1"]

def test_unblock_files(tmp_path):
	blockedTree(tmp_path)
	summary = unblockFiles(str(tmp_path))
	assert summary["created"] == 1
	assert summary["existing"] == 1
	assert not (tmp_path / ("setup.ps1" + ZONE_IDENTIFIER)).exists()
	assert (tmp_path / "setup.ps1").exists()

def test_unblock_single_file_what_if(tmp_path):
	blockedTree(tmp_path)
	summary = unblockFiles(str(tmp_path / "setup.ps1"), whatIf = True)
	assert summary["created"] == 1
	assert (tmp_path / ("setup.ps1" + ZONE_IDENTIFIER)).exists()

def test_unblock_missing_path(tmp_path):
	summary = unblockFiles(str(tmp_path / "absent"))
	assert summary["failed"] == 1
