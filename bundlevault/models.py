import json
from datetime import datetime, timezone

from bundlevault import db
from bundlevault.backup.types import BackupFormat, BackupSpec, RemoteTarget, RetentionPolicy


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BackupJob(db.Model):
    """Backup job configuration"""
    __tablename__ = 'backup_jobs'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), unique=True, nullable=False)
    description = db.Column(db.Text)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    sources = db.Column(db.Text, nullable=False)  # JSON list of paths
    source_root = db.Column(db.String(1000))  # Directory the archiver runs in
    backup_directory = db.Column(db.String(1000))  # null = LOCAL_BACKUP_DIR
    backup_format = db.Column(db.String(20), nullable=False, default='tar.gz')  # tar.gz, tar.zst, zip
    exclude_patterns = db.Column(db.Text)  # JSON list
    compression_level = db.Column(db.Integer)
    compressor_override = db.Column(db.String(255))
    schedule_cron = db.Column(db.String(100))  # Cron expression
    local_retention = db.Column(db.String(20))  # e.g. 7d, 2w, 1m
    remote_retention = db.Column(db.String(20))
    keep_at_least = db.Column(db.Integer)  # Newest backups never pruned
    sftp_target = db.Column(db.String(1000))  # user@host[:port] [key_file] remote_dir
    delete_after_upload = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    # Relationship
    history = db.relationship('BackupHistory', back_populates='job', cascade='all, delete-orphan', lazy='dynamic')

    def source_list(self) -> list:
        return json.loads(self.sources) if self.sources else []

    def exclude_list(self) -> list:
        return json.loads(self.exclude_patterns) if self.exclude_patterns else []

    def to_spec(self, default_backup_directory: str) -> BackupSpec:
        return BackupSpec(
            name=self.name,
            sources=self.source_list(),
            backup_directory=self.backup_directory or default_backup_directory,
            format=BackupFormat.from_string(self.backup_format),
            exclude_patterns=self.exclude_list(),
            compression_level=self.compression_level,
            compressor_override=self.compressor_override,
            source_root=self.source_root
        )

    def to_local_policy(self):
        if not self.local_retention:
            return None
        return RetentionPolicy.from_string(self.local_retention, self.keep_at_least)

    def to_remote_policy(self):
        if not self.remote_retention:
            return None
        return RetentionPolicy.from_string(self.remote_retention, self.keep_at_least)

    def to_remote_target(self):
        if not self.sftp_target:
            return None
        return RemoteTarget.parse(self.sftp_target)

    def __repr__(self):
        return f'<BackupJob {self.name} format={self.backup_format} enabled={self.enabled}>'


class BackupHistory(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_history'

    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey('backup_jobs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, partial, failed
    started_at = db.Column(db.DateTime, default=_utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    file_name = db.Column(db.String(500))
    file_path = db.Column(db.String(1000))
    sha256_hash = db.Column(db.String(64))
    file_size_bytes = db.Column(db.BigInteger)
    remote_path = db.Column(db.String(1000))
    error_code = db.Column(db.String(50))
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    job = db.relationship('BackupJob', back_populates='history')

    def __repr__(self):
        return f'<BackupHistory job_id={self.job_id} status={self.status}>'
