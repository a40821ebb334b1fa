from openplane.worker.host import worker_command

if __name__ == "__main__":
    worker_command(prog_name="openplane-worker")
