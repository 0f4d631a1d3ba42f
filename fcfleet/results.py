"""Per-VM outcomes collected by one fleet pass."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .models import RunningVM, VMRecord


def status_line(ok: bool | None, label: str, detail: str = '') -> str:
    icon = '✅' if ok is True else ('➖' if ok is None else '❌')
    suffix = f' - {detail}' if detail else ''
    return f'{icon} {label}{suffix}'


@dataclass
class VMOutcome:
    vm_id: str
    record: VMRecord
    running: Optional[RunningVM] = None
    stage: str = ''
    reason: str = ''

    @property
    def ok(self) -> bool:
        return self.running is not None


@dataclass
class FleetOutcome:
    outcomes: dict[str, VMOutcome] = field(default_factory=dict)

    def add(self, outcome: VMOutcome) -> None:
        self.outcomes[outcome.vm_id] = outcome

    def running(self) -> list[RunningVM]:
        return [o.running for o in self.outcomes.values() if o.running is not None]

    def failed(self) -> list[VMOutcome]:
        return [o for o in self.outcomes.values() if not o.ok]

    def __getitem__(self, vm_id: str) -> VMOutcome:
        return self.outcomes[vm_id]

    def __len__(self) -> int:
        return len(self.outcomes)

    def as_dict(self, *, ssh_user: str = 'root') -> dict[str, list[str]]:
        return {
            'running': [
                f'{vm.spec.vm_id}: ssh {ssh_user}@{vm.endpoint}'
                for vm in self.running()
            ],
            'failed': [
                f'{o.vm_id}: [{o.stage}] {o.reason}' for o in self.failed()
            ],
        }

    def render_summary(self, *, ssh_user: str = 'root') -> str:
        lines = [
            f'Fleet: {len(self.running())} running, {len(self.failed())} failed'
        ]
        for o in self.outcomes.values():
            if o.running is not None:
                vm = o.running
                retry = f', retries={vm.retries}' if vm.retries else ''
                lines.append(
                    '  '
                    + status_line(
                        True,
                        o.vm_id,
                        f'ssh {ssh_user}@{vm.endpoint} '
                        f'(tap={vm.attachment.tap}, rootfs={vm.storage.method}{retry})',
                    )
                )
            else:
                lines.append(
                    '  ' + status_line(False, o.vm_id, f'{o.stage}: {o.reason}')
                )
        return '\n'.join(lines)
