# -*- coding: utf-8 -*-
"""
cPanel remote full backup: trigger, wait, download over FTP, verify, clean up.

Features
- Starts a cPanel "full backup to home directory" job over HTTP(S).
- Finds the new backup-*.tar.gz on the FTP side by comparing against the
  youngest backup present before the job was started.
- Waits until the file stops growing (two equal sizes above a minimum).
- Streams the download through a background writer with a rich progress bar;
  writes to .part then atomically renames on success.
- Verifies the archive end to end, then deletes the remote copy (a failed
  delete is reported but keeps the run successful).
- 421 "connection closed" replies drop the FTP session; deletion logs in again
  and retries once.

Usage
  cpanel-backup example.com /srv/backups --user me --password env:CPANEL_PASS

Optional config (JSON)
{
  "cpanel": { "host": "example.com", "user": "me", "password": "keyring:cpanel/me",
              "https": true, "skin": "paper_lantern" },
  "ftp": { "port": 21, "tls": false, "timeout": 30 },
  "backup": { "output_dir": "/srv/backups", "timeout": 300, "poll_interval": 15,
              "min_file_bytes": 5000, "verify": true, "delete": true },
  "secrets": { "use_dotenv": true, "dotenv_path": null, "keyring_service": "cpanel_backup" }
}
"""

__version__ = "1.0.0"
