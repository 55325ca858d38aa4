import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any

from task_engine.actions.registry import ActionRegistry
from task_engine.actions.schemas import SendEmailConfig
from task_engine.backends.polling import PollingBackend
from task_engine.domain.action import ActionSpec, ActionType
from task_engine.domain.condition import EvaluationContext
from task_engine.domain.task import UTC, OneTimeSchedule, RecurringSchedule, Task
from task_engine.storages.sqlalchemy import SqlAlchemyStorage

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


class PrintEmailHandler:
    @staticmethod
    def supported_type() -> ActionType:
        return ActionType.SEND_EMAIL

    async def invoke(self, config: SendEmailConfig, context: EvaluationContext, cancel_signal: asyncio.Event) -> Any:
        print(f"To: {config.to} | {config.subject}\n{config.body}")
        return {"sent_at": context.now.isoformat()}


registry = ActionRegistry()
registry.register(PrintEmailHandler())
storage = SqlAlchemyStorage(db_url="sqlite+aiosqlite:///./tasks.db")
backend = PollingBackend(registry, storage)


def email(subject: str) -> ActionSpec:
    return ActionSpec(type=ActionType.SEND_EMAIL,
                      config={"to": "ops@example.com", "subject": subject, "body": "Sent by task_engine"})


async def get_user_input():
    return await asyncio.to_thread(input, "> ")


async def console():
    print("Commands: list, run <task id>, history <task id>, cancel <task id>, exit")
    while True:
        command, _, argument = (await get_user_input()).strip().partition(" ")
        if command == "exit":
            break
        try:
            if command == "list":
                for task in await backend.list_tasks():
                    print(f"{task.id} {task.status.value:<9} next={task.next_run_at} {task.name}")
            elif command == "run":
                execution = await backend.run_now(argument)
                print(f"{execution.id}: {execution.status.value} {execution.result}")
            elif command == "history":
                for execution in await backend.list_executions(argument):
                    print(f"{execution.id} attempt {execution.attempt_number}: {execution.status.value}")
            elif command == "cancel":
                task = await backend.cancel_task(argument)
                print(f"{task.id}: {task.status.value}")
            else:
                print(f"Unknown command: {command}")
        except Exception as e:
            print(f"Error: {e}")


async def main():
    await backend.start()
    await backend.create_task(Task(
        name="Minutely heartbeat",
        schedule=RecurringSchedule(cron_expression="* * * * *"),
        action=email("Heartbeat"),
    ))
    await backend.create_task(Task(
        name="Reminder",
        schedule=OneTimeSchedule(run_at=datetime.now(UTC) + timedelta(seconds=10)),
        action=email("Reminder"),
    ))
    await console()
    await backend.stop()
    await storage.dispose()

if __name__ == "__main__":
    asyncio.run(main())
