from revaultron.main import main

raise SystemExit(main())
